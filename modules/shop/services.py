from datetime import datetime
from typing import List

from pymongo import ReturnDocument

from core.database import Database
from core.exceptions import ItemUnavailable, NotFound
from core.logger import setup_logger
from core.unit_of_work import UnitOfWork
from modules.economy.models import Direction
from modules.economy.services import CurrencyLedger
from modules.shop.models import PurchaseRequest, PurchaseResult, ShopItem

logger = setup_logger("shop_service")


class ItemService:
    @staticmethod
    async def create_item(item: ShopItem) -> ShopItem:
        """Create a new item in the database."""
        result = await Database.shop_items().insert_one(item.to_mongo())
        item.id = result.inserted_id
        logger.info(f"Created item: {item.name} ({item.item_id})")
        return item

    @staticmethod
    async def get_item(item_id: str, session=None) -> ShopItem:
        doc = await Database.shop_items().find_one({"item_id": item_id}, session=session)
        if doc is None:
            raise NotFound("item", item_id)
        return ShopItem(**doc)

    @staticmethod
    async def get_items_by_class(class_id: str, available_only: bool = True) -> List[ShopItem]:
        """Fetch the store of a class, cheapest first."""
        query = {"class_id": class_id}
        if available_only:
            query["available"] = True

        cursor = Database.shop_items().find(query).sort("price", 1)
        items = []
        async for doc in cursor:
            items.append(ShopItem(**doc))
        return items

    @staticmethod
    async def update_item(item_id: str, updates: dict) -> bool:
        """Update an item."""
        updates = {**updates, "updated_at": datetime.utcnow()}
        result = await Database.shop_items().update_one(
            {"item_id": item_id},
            {"$set": updates}
        )
        return result.modified_count > 0

    @staticmethod
    async def times_purchased(item_id: str) -> int:
        return await Database.transactions().count_documents(
            {"source_reference": f"item:{item_id}", "direction": Direction.DEBIT.value}
        )


class ShopService:
    @staticmethod
    async def purchase(request: PurchaseRequest, uow: UnitOfWork = None) -> PurchaseResult:
        """
        Buy an item: availability checks, then an atomic check-balance-then-debit.
        Applying the item's effect is left to the caller.
        """
        uow = uow or UnitOfWork()
        item = await ItemService.get_item(request.item_id, session=uow.session)

        if item.class_id != request.class_id:
            raise ItemUnavailable(f"Item {item.item_id} is not sold in class {request.class_id}")
        if not item.available:
            raise ItemUnavailable(f"Item {item.item_id} is not available")
        if item.limited and item.stock <= 0:
            raise ItemUnavailable(f"Item {item.item_id} is sold out")

        source_reference = f"item:{item.item_id}"
        # Raises InsufficientFunds before anything is written
        transaction_id = await CurrencyLedger.append(
            request.student_id, request.class_id, Direction.DEBIT, item.price,
            f"Purchase: {item.name}", source_reference=source_reference, uow=uow
        )

        if item.limited:
            doc = await Database.shop_items().find_one_and_update(
                {"item_id": item.item_id, "stock": {"$gt": 0}},
                {"$inc": {"stock": -1}, "$set": {"updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER,
                session=uow.session
            )
            if doc is None:
                # Last unit went to someone else between the check and the debit
                await CurrencyLedger.append(
                    request.student_id, request.class_id, Direction.CREDIT, item.price,
                    f"Refund: {item.name} sold out", source_reference=source_reference, uow=uow
                )
                raise ItemUnavailable(f"Item {item.item_id} is sold out")

            item.stock = doc["stock"]
            if item.stock <= 0:
                await Database.shop_items().update_one(
                    {"item_id": item.item_id}, {"$set": {"available": False}}, session=uow.session
                )
                item.available = False

        balance = await CurrencyLedger.balance(request.student_id, request.class_id, session=uow.session)
        logger.info(f"Student {request.student_id} bought {item.name} for {item.price}")
        return PurchaseResult(item=item, transaction_id=transaction_id, balance=balance)
