import asyncio

import pytest

from core.exceptions import InsufficientFunds, ItemUnavailable, NotFound
from factories import CLASS_ID
from modules.economy.models import Direction
from modules.economy.services import CurrencyLedger
from modules.shop.models import PurchaseRequest, ShopItem
from modules.shop.services import ItemService, ShopService


@pytest.fixture
async def pass_item():
    return await ItemService.create_item(ShopItem(
        item_id="homework-pass", class_id=CLASS_ID, name="Homework Pass", price=100
    ))


def request_for(student_id="alice", item_id="homework-pass", class_id=CLASS_ID):
    return PurchaseRequest(item_id=item_id, student_id=student_id, class_id=class_id)


async def test_purchase_debits_balance(pass_item):
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 130, "Activity")

    result = await ShopService.purchase(request_for())

    assert result.balance == 30
    assert result.item.item_id == "homework-pass"
    assert await ItemService.times_purchased("homework-pass") == 1


async def test_insufficient_balance_changes_nothing(pass_item):
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 99, "Activity")

    with pytest.raises(InsufficientFunds):
        await ShopService.purchase(request_for())
    assert await CurrencyLedger.balance("alice", CLASS_ID) == 99


async def test_concurrent_purchases_never_overdraw(pass_item):
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 100, "Activity")

    results = await asyncio.gather(
        ShopService.purchase(request_for()),
        ShopService.purchase(request_for()),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientFunds)
    assert await CurrencyLedger.balance("alice", CLASS_ID) == 0
    assert await CurrencyLedger.wallet_balance("alice", CLASS_ID) == 0


async def test_limited_stock_sells_out():
    await ItemService.create_item(ShopItem(
        item_id="sticker", class_id=CLASS_ID, name="Golden Sticker", price=10, limited=True, stock=1
    ))
    for student_id in ("alice", "bob"):
        await CurrencyLedger.append(student_id, CLASS_ID, Direction.CREDIT, 50, "Activity")

    result = await ShopService.purchase(request_for("alice", "sticker"))
    assert result.item.stock == 0
    assert not result.item.available

    with pytest.raises(ItemUnavailable):
        await ShopService.purchase(request_for("bob", "sticker"))
    assert await CurrencyLedger.balance("bob", CLASS_ID) == 50
    assert await ItemService.get_items_by_class(CLASS_ID) == []


async def test_item_from_another_class(pass_item):
    await CurrencyLedger.append("alice", "other-class", Direction.CREDIT, 500, "Activity")
    with pytest.raises(ItemUnavailable):
        await ShopService.purchase(request_for(class_id="other-class"))


async def test_unavailable_item(pass_item):
    await ItemService.update_item("homework-pass", {"available": False})
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 500, "Activity")
    with pytest.raises(ItemUnavailable):
        await ShopService.purchase(request_for())


async def test_unknown_item():
    with pytest.raises(NotFound):
        await ShopService.purchase(request_for(item_id="nope"))
