import pytest

from core.database import Database
from core.exceptions import InsufficientFunds, InvalidAmount
from factories import CLASS_ID, fail_once
from modules.economy.models import Direction
from modules.economy.services import CurrencyLedger


async def test_balance_is_replayed_from_the_log():
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 50, "Activity")
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 30, "Mission")
    await CurrencyLedger.append("alice", CLASS_ID, Direction.DEBIT, 45, "Purchase")

    assert await CurrencyLedger.balance("alice", CLASS_ID) == 35
    assert await CurrencyLedger.wallet_balance("alice", CLASS_ID) == 35
    history = await CurrencyLedger.history("alice", CLASS_ID)
    assert sum(t.signed_amount for t in history) == 35


async def test_balances_are_scoped_per_class():
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 50, "Activity")
    await CurrencyLedger.append("alice", "other-class", Direction.CREDIT, 7, "Activity")
    assert await CurrencyLedger.balance("alice", CLASS_ID) == 50
    assert await CurrencyLedger.balance("alice", "other-class") == 7


@pytest.mark.parametrize("amount", [0, -5, 2.5, True])
async def test_non_positive_or_non_integer_amounts_are_rejected(amount):
    with pytest.raises(InvalidAmount):
        await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, amount, "Bad")
    assert await Database.transactions().count_documents({}) == 0


async def test_debit_never_overdraws():
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 20, "Activity")

    with pytest.raises(InsufficientFunds) as excinfo:
        await CurrencyLedger.append("alice", CLASS_ID, Direction.DEBIT, 21, "Purchase")

    assert excinfo.value.required == 21
    assert await CurrencyLedger.balance("alice", CLASS_ID) == 20
    assert await Database.transactions().count_documents({"direction": "debit"}) == 0


async def test_debit_without_wallet_is_insufficient():
    with pytest.raises(InsufficientFunds):
        await CurrencyLedger.append("alice", CLASS_ID, Direction.DEBIT, 1, "Purchase")


async def test_rebuild_wallet_fixes_drift():
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 40, "Activity")
    await Database.wallets().update_one({"student_id": "alice"}, {"$set": {"balance": 999}})

    assert await CurrencyLedger.rebuild_wallet("alice", CLASS_ID) == 40
    assert await CurrencyLedger.wallet_balance("alice", CLASS_ID) == 40


async def test_grant_adds_and_removes():
    assert await CurrencyLedger.grant("alice", CLASS_ID, 30, "Helping out", actor_id="teacher-1") == 30
    assert await CurrencyLedger.grant("alice", CLASS_ID, -10, "Correction", actor_id="teacher-1") == 20

    doc = await Database.transactions().find_one({"direction": "debit"})
    assert doc["performed_by"] == "teacher-1"
    assert doc["amount"] == 10

    with pytest.raises(InvalidAmount):
        await CurrencyLedger.grant("alice", CLASS_ID, 0, "Nothing", actor_id="teacher-1")


async def test_keyed_credit_is_logged_once():
    first = await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 15, "Activity",
                                        idempotency_key="activity:essay")
    second = await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 15, "Activity",
                                         idempotency_key="activity:essay")

    assert first == second
    assert await CurrencyLedger.balance("alice", CLASS_ID) == 15
    assert await CurrencyLedger.wallet_balance("alice", CLASS_ID) == 15


async def test_same_key_for_another_student_is_a_separate_credit():
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 15, "Activity", idempotency_key="activity:essay")
    await CurrencyLedger.append("bob", CLASS_ID, Direction.CREDIT, 15, "Activity", idempotency_key="activity:essay")
    assert await CurrencyLedger.balance("bob", CLASS_ID) == 15


async def test_interrupted_keyed_credit_catches_the_wallet_up(monkeypatch):
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 5, "Earlier")
    fail_once(monkeypatch, CurrencyLedger, "_credit_wallet")

    with pytest.raises(ConnectionError):
        await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 20, "Mission",
                                    idempotency_key="mission:m1")
    assert await CurrencyLedger.balance("alice", CLASS_ID) == 25
    assert await CurrencyLedger.wallet_balance("alice", CLASS_ID) == 5

    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 20, "Mission", idempotency_key="mission:m1")

    assert await CurrencyLedger.balance("alice", CLASS_ID) == 25
    assert await CurrencyLedger.wallet_balance("alice", CLASS_ID) == 25


async def test_debits_cannot_be_keyed():
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 50, "Activity")
    with pytest.raises(ValueError):
        await CurrencyLedger.append("alice", CLASS_ID, Direction.DEBIT, 10, "Purchase", idempotency_key="item:x")
    assert await CurrencyLedger.balance("alice", CLASS_ID) == 50


async def test_rebuilt_wallet_is_not_credited_again_on_retry(monkeypatch):
    fail_once(monkeypatch, CurrencyLedger, "_credit_wallet")
    with pytest.raises(ConnectionError):
        await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 20, "Mission", idempotency_key="mission:m1")

    assert await CurrencyLedger.rebuild_wallet("alice", CLASS_ID) == 20
    await CurrencyLedger.append("alice", CLASS_ID, Direction.CREDIT, 20, "Mission", idempotency_key="mission:m1")

    assert await CurrencyLedger.wallet_balance("alice", CLASS_ID) == 20
    assert (await Database.wallets().find_one({"student_id": "alice"}))["credited_keys"] == ["mission:m1"]
