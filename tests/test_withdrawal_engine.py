"""Tests for WithdrawalEngine request, review and refund."""

from __future__ import annotations

import asyncio

import pytest

from reward_economy.database import LedgerStore
from reward_economy.outcomes import ErrorKind
from reward_economy.withdrawal_engine import WithdrawalEngine

from tests.conftest import NOW, seed_account


class TestRequestValidation:
    @pytest.mark.parametrize("method,amount,account_number,code", [
        ("paypal", 600, "03001234567", "invalid_method"),
        ("easypaisa", "600", "03001234567", "invalid_amount"),
        ("easypaisa", 600.5, "03001234567", "invalid_amount"),
        ("easypaisa", float("nan"), "03001234567", "invalid_amount"),
        ("easypaisa", 499.0, "03001234567", "below_minimum"),
        ("easypaisa", True, "03001234567", "invalid_amount"),
        ("easypaisa", 499, "03001234567", "below_minimum"),
        ("easypaisa", 600, "123", "invalid_account_number"),
        ("easypaisa", 600, None, "invalid_account_number"),
    ])
    async def test_rejects_bad_shape(
        self,
        withdrawal_engine: WithdrawalEngine,
        database: LedgerStore,
        method,
        amount,
        account_number,
        code: str,
    ):
        await seed_account(database, "alice", balance=1000)

        outcome = await withdrawal_engine.request("alice", method, amount, account_number, now=NOW)

        assert not outcome.success
        assert outcome.failure.code == code
        assert outcome.failure.kind is ErrorKind.VALIDATION
        assert (await database.get_account("alice"))["balance"] == 1000

    async def test_minimum_message(self, withdrawal_engine: WithdrawalEngine, database: LedgerStore):
        await seed_account(database, "alice", balance=1000)
        outcome = await withdrawal_engine.request("alice", "jazzcash", 100, "03001234567", now=NOW)
        assert outcome.failure.message == "Minimum withdrawal is PKR 500"

    async def test_insufficient_balance(self, withdrawal_engine: WithdrawalEngine, database: LedgerStore):
        await seed_account(database, "alice", balance=400)
        outcome = await withdrawal_engine.request("alice", "jazzcash", 500, "03001234567", now=NOW)
        assert outcome.failure.message == "Insufficient balance"
        assert outcome.failure.kind is ErrorKind.STATE_CONFLICT

    async def test_banned_account(self, withdrawal_engine: WithdrawalEngine, database: LedgerStore):
        await seed_account(database, "bob", balance=1000, status="banned")
        outcome = await withdrawal_engine.request("bob", "jazzcash", 500, "03001234567", now=NOW)
        assert outcome.failure.message == "Account is suspended"
        assert outcome.failure.kind is ErrorKind.FORBIDDEN

    async def test_unknown_user(self, withdrawal_engine: WithdrawalEngine):
        outcome = await withdrawal_engine.request("ghost", "jazzcash", 500, "03001234567", now=NOW)
        assert outcome.failure.kind is ErrorKind.NOT_FOUND


class TestRequest:
    async def test_request_debits_and_records(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        await seed_account(database, "alice", balance=1200)

        outcome = await withdrawal_engine.request(
            "alice", "easypaisa", 600, " 03001234567 ", "Alice A", now=NOW,
        )

        assert outcome.success
        body = outcome.to_dict()
        assert body["amount"] == 600
        assert body["fee"] == 0
        assert body["netAmount"] == 600
        assert body["status"] == "pending"

        account = await database.get_account("alice")
        assert account["balance"] == 600
        assert account["total_earned"] == 1200
        assert await database.get_ledger_sum("alice") == 600

        row = await database.get_withdrawal(body["withdrawalId"])
        assert row["account_number"] == "03001234567"
        assert row["account_name"] == "Alice A"

    async def test_whole_float_amount_accepted(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        await seed_account(database, "alice", balance=1000)

        outcome = await withdrawal_engine.request("alice", "jazzcash", 500.0, "03001234567", now=NOW)

        assert outcome.success
        assert outcome.data["amount"] == 500
        assert isinstance(outcome.data["amount"], int)
        row = await database.get_withdrawal(outcome.data["withdrawalId"])
        assert row["amount"] == 500
        assert (await database.get_account("alice"))["balance"] == 500
        assert await database.get_ledger_sum("alice") == 500

    async def test_usdt_fee(self, withdrawal_engine: WithdrawalEngine, database: LedgerStore):
        await seed_account(database, "alice", balance=1000)
        outcome = await withdrawal_engine.request("alice", "usdt", 1000, "TXa1b2c3d4e5", now=NOW)
        assert outcome.data["fee"] == pytest.approx(20.0)
        assert outcome.data["netAmount"] == pytest.approx(980.0)
        assert (await database.get_account("alice"))["balance"] == 0

    async def test_one_pending_at_a_time(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        await seed_account(database, "alice", balance=2000)
        await withdrawal_engine.request("alice", "easypaisa", 600, "03001234567", now=NOW)

        outcome = await withdrawal_engine.request("alice", "easypaisa", 600, "03001234567", now=NOW + 1)

        assert outcome.failure.code == "pending_withdrawal_exists"
        assert (await database.get_account("alice"))["balance"] == 1400

    async def test_concurrent_requests_open_one(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        await seed_account(database, "alice", balance=2000)

        results = await asyncio.gather(*[
            withdrawal_engine.request("alice", "jazzcash", 600, "03001234567", now=NOW)
            for _ in range(4)
        ])

        assert sum(1 for r in results if r.success) == 1
        assert (await database.get_account("alice"))["balance"] == 1400
        assert await database.get_ledger_sum("alice") == 1400


class TestReview:
    async def _pending(self, engine: WithdrawalEngine, db: LedgerStore) -> str:
        await seed_account(db, "alice", balance=1000)
        outcome = await engine.request("alice", "usdt", 1000, "TXa1b2c3d4e5", now=NOW)
        return outcome.data["withdrawalId"]

    async def test_approve(self, withdrawal_engine: WithdrawalEngine, database: LedgerStore):
        wid = await self._pending(withdrawal_engine, database)

        outcome = await withdrawal_engine.approve(wid, "admin", now=NOW + 1000)

        assert outcome.success
        row = await database.get_withdrawal(wid)
        assert row["status"] == "approved"
        assert row["approved_by"] == "admin"
        assert (await database.get_account("alice"))["balance"] == 0
        actions = await database.get_admin_actions()
        assert actions[0]["action"] == "approve_withdrawal"
        assert actions[0]["target_id"] == wid

    async def test_reject_refunds_full_amount(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        wid = await self._pending(withdrawal_engine, database)

        outcome = await withdrawal_engine.reject(wid, "admin", now=NOW + 1000)

        assert outcome.success
        row = await database.get_withdrawal(wid)
        assert row["status"] == "rejected"
        assert row["rejection_reason"] == "Rejected by admin"
        account = await database.get_account("alice")
        assert account["balance"] == 1000  # fee is refunded too
        assert account["total_earned"] == 1000
        assert await database.get_ledger_sum("alice") == 1000
        entries = await database.get_ledger_entries("alice")
        assert entries[0]["type"] == "withdrawal_refund"
        assert withdrawal_engine.refunded_total == 1000

    async def test_reject_with_reason(self, withdrawal_engine: WithdrawalEngine, database: LedgerStore):
        wid = await self._pending(withdrawal_engine, database)
        await withdrawal_engine.reject(wid, "admin", reason="Name mismatch", now=NOW + 1)
        assert (await database.get_withdrawal(wid))["rejection_reason"] == "Name mismatch"

    async def test_cannot_resolve_twice(self, withdrawal_engine: WithdrawalEngine, database: LedgerStore):
        wid = await self._pending(withdrawal_engine, database)
        await withdrawal_engine.approve(wid, "admin", now=NOW + 1)

        outcome = await withdrawal_engine.reject(wid, "admin", now=NOW + 2)

        assert outcome.failure.code == "withdrawal_not_pending"
        assert outcome.failure.message == "Withdrawal is already approved"
        assert (await database.get_account("alice"))["balance"] == 0

    async def test_racing_rejects_refund_once(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        wid = await self._pending(withdrawal_engine, database)

        results = await asyncio.gather(*[
            withdrawal_engine.reject(wid, "admin", now=NOW + 1) for _ in range(3)
        ])

        assert sum(1 for r in results if r.success) == 1
        assert (await database.get_account("alice"))["balance"] == 1000

    async def test_unknown_withdrawal(self, withdrawal_engine: WithdrawalEngine):
        outcome = await withdrawal_engine.approve("nope", "admin", now=NOW)
        assert outcome.failure.kind is ErrorKind.NOT_FOUND

    async def test_new_request_allowed_after_resolution(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        wid = await self._pending(withdrawal_engine, database)
        await withdrawal_engine.reject(wid, "admin", now=NOW + 1)

        outcome = await withdrawal_engine.request("alice", "easypaisa", 500, "03001234567", now=NOW + 2)

        assert outcome.success


class TestQueries:
    async def test_history_and_listings(
        self, withdrawal_engine: WithdrawalEngine, database: LedgerStore,
    ):
        await seed_account(database, "alice", balance=1000)
        await seed_account(database, "bob", balance=1000)
        first = await withdrawal_engine.request("alice", "easypaisa", 500, "03001234567", now=NOW)
        await withdrawal_engine.request("bob", "easypaisa", 700, "03007654321", now=NOW + 10)
        await withdrawal_engine.approve(first.data["withdrawalId"], "admin", now=NOW + 20)

        history = await withdrawal_engine.history("alice")
        assert [h["status"] for h in history] == ["approved"]
        assert history[0]["approvedBy"] == "admin"

        pending = await withdrawal_engine.list_pending()
        assert [p["uid"] for p in pending] == ["bob"]

        everything = await withdrawal_engine.list_all("all")
        assert [w["uid"] for w in everything] == ["bob", "alice"]
        assert len(await withdrawal_engine.list_all("approved")) == 1
