from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from core.database import Database
from core.exceptions import InsufficientFunds, InvalidAmount
from core.logger import setup_logger
from core.unit_of_work import UnitOfWork
from modules.economy.models import CurrencyTransaction, Direction

logger = setup_logger("economy_service")


class CurrencyLedger:
    """
    Append-only currency log per (student, class).

    The wallet document is a running balance kept in the same session as each
    append. It exists so a debit can be an atomic check-then-decrement; the
    transaction log stays the source of truth.
    """

    @staticmethod
    async def append(student_id: str, class_id: str, direction: Direction, amount: int, reason: str,
                     source_reference: Optional[str] = None, performed_by: Optional[str] = None,
                     uow: UnitOfWork = None, idempotency_key: Optional[str] = None) -> ObjectId:
        """
        Record a credit or debit. Debits fail with InsufficientFunds instead of overdrawing.

        A credit with an `idempotency_key` is logged at most once per (student, class):
        repeating it returns the original transaction id and only catches the wallet up.
        """
        uow = uow or UnitOfWork()
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmount(f"Amount must be a positive integer, got {amount!r}")
        direction = Direction(direction)
        if idempotency_key and direction == Direction.DEBIT:
            raise ValueError("Only credits can carry an idempotency key")

        txn = CurrencyTransaction(
            student_id=student_id,
            class_id=class_id,
            direction=direction,
            amount=amount,
            reason=reason,
            source_reference=source_reference,
            performed_by=performed_by,
            idempotency_key=idempotency_key,
        )
        if txn.idempotency_key is None:
            txn.idempotency_key = str(txn.id)

        if direction == Direction.DEBIT:
            await CurrencyLedger._debit_wallet(student_id, class_id, amount, uow)
            await Database.transactions().insert_one(txn.to_mongo(), session=uow.session)
            logger.info(f"Logged debit of {amount} for {student_id} in {class_id}: {reason}")
            return txn.id

        # Credits: the log row first, it is the source of truth
        try:
            await Database.transactions().insert_one(txn.to_mongo(), session=uow.session)
        except DuplicateKeyError:
            if not idempotency_key:
                raise
            existing = await Database.transactions().find_one(
                {"student_id": student_id, "class_id": class_id, "idempotency_key": idempotency_key},
                session=uow.session
            )
            logger.info(f"Credit {idempotency_key} already logged for {student_id} in {class_id}")
            await CurrencyLedger._credit_wallet(student_id, class_id, existing["amount"], uow, idempotency_key)
            return existing["_id"]

        await CurrencyLedger._credit_wallet(student_id, class_id, amount, uow, idempotency_key)
        logger.info(f"Logged credit of {amount} for {student_id} in {class_id}: {reason}")
        return txn.id

    @staticmethod
    async def _credit_wallet(student_id: str, class_id: str, amount: int, uow: UnitOfWork,
                             idempotency_key: Optional[str] = None):
        query = {"student_id": student_id, "class_id": class_id}
        update = {
            "$inc": {"balance": amount},
            "$set": {"updated_at": datetime.utcnow()},
            "$setOnInsert": {"created_at": datetime.utcnow()},
        }
        if idempotency_key:
            query["credited_keys"] = {"$ne": idempotency_key}
            update["$push"] = {"credited_keys": idempotency_key}
        try:
            await Database.wallets().update_one(query, update, upsert=True, session=uow.session)
        except DuplicateKeyError:
            # The wallet exists now: created by another request, or it already counted this key
            await Database.wallets().update_one(query, update, session=uow.session)

    @staticmethod
    async def _debit_wallet(student_id: str, class_id: str, amount: int, uow: UnitOfWork):
        # The balance check and the decrement are one atomic document update
        doc = await Database.wallets().find_one_and_update(
            {"student_id": student_id, "class_id": class_id, "balance": {"$gte": amount}},
            {"$inc": {"balance": -amount}, "$set": {"updated_at": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=uow.session
        )
        if doc is None:
            logger.info(f"Rejected debit of {amount} for {student_id} in {class_id}: insufficient balance")
            raise InsufficientFunds(student_id, class_id, amount)

    @staticmethod
    async def balance(student_id: str, class_id: str, session=None) -> int:
        """Sum of credits minus sum of debits, replayed from the log."""
        pipeline = [
            {"$match": {"student_id": student_id, "class_id": class_id}},
            {"$group": {"_id": "$direction", "total": {"$sum": "$amount"}}},
        ]
        totals = {Direction.CREDIT.value: 0, Direction.DEBIT.value: 0}
        async for doc in Database.transactions().aggregate(pipeline, session=session):
            totals[doc["_id"]] = doc["total"]
        return totals[Direction.CREDIT.value] - totals[Direction.DEBIT.value]

    @staticmethod
    async def wallet_balance(student_id: str, class_id: str, session=None) -> int:
        doc = await Database.wallets().find_one({"student_id": student_id, "class_id": class_id}, session=session)
        return doc["balance"] if doc else 0

    @staticmethod
    async def rebuild_wallet(student_id: str, class_id: str) -> int:
        """Recompute the materialized balance, and the keys it already counts, from the transaction log."""
        balance = await CurrencyLedger.balance(student_id, class_id)
        previous = await CurrencyLedger.wallet_balance(student_id, class_id)
        if previous != balance:
            logger.warning(f"Wallet drift for {student_id} in {class_id}: {previous} -> {balance}")

        # Unkeyed rows carry their own id as key and are never retried
        cursor = Database.transactions().find(
            {"student_id": student_id, "class_id": class_id, "direction": Direction.CREDIT.value},
            {"idempotency_key": 1}
        )
        credited_keys = [doc["idempotency_key"] async for doc in cursor
                         if doc.get("idempotency_key") and doc["idempotency_key"] != str(doc["_id"])]

        await Database.wallets().update_one(
            {"student_id": student_id, "class_id": class_id},
            {"$set": {"balance": balance, "credited_keys": credited_keys, "updated_at": datetime.utcnow()},
             "$setOnInsert": {"created_at": datetime.utcnow()}},
            upsert=True
        )
        return balance

    @staticmethod
    async def history(student_id: str, class_id: str, limit: int = 50) -> List[CurrencyTransaction]:
        cursor = Database.transactions().find({"student_id": student_id, "class_id": class_id}) \
            .sort("created_at", -1).limit(limit)
        return [CurrencyTransaction(**doc) async for doc in cursor]

    @staticmethod
    async def grant(student_id: str, class_id: str, amount: int, reason: str, actor_id: str) -> int:
        """Teacher adjustment: positive adds, negative removes. Returns the new balance."""
        if amount == 0:
            raise InvalidAmount("Amount must not be zero")
        direction = Direction.CREDIT if amount > 0 else Direction.DEBIT
        await CurrencyLedger.append(
            student_id, class_id, direction, abs(amount), reason,
            source_reference="manual", performed_by=actor_id
        )
        return await CurrencyLedger.balance(student_id, class_id)
