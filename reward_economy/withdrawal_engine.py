"""Withdrawal requests and their admin review.

A request debits the balance immediately and parks the funds in a pending
withdrawal; approval only changes the status, rejection refunds the full
requested amount. At most one pending request exists per account.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .outcomes import (
    USER_NOT_FOUND,
    ErrorKind,
    Failure,
    conflict,
    not_found,
    require_failure,
    validation,
)
from .utils import now_ms

if TYPE_CHECKING:
    from .config import WithdrawalsConfig
    from .database import LedgerStore


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class WithdrawalOutcome:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    failure: Failure | None = None

    def __post_init__(self) -> None:
        require_failure(self.success, self.failure)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return self.failure.to_dict()


ACCOUNT_SUSPENDED = Failure(ErrorKind.FORBIDDEN, "account_suspended", "Account is suspended")
INSUFFICIENT_BALANCE = conflict("insufficient_balance", "Insufficient balance")
PENDING_EXISTS = conflict("pending_withdrawal_exists", "You already have a pending withdrawal request")
WITHDRAWAL_NOT_FOUND = not_found("withdrawal_not_found", "Withdrawal not found")


def _failed(failure: Failure) -> WithdrawalOutcome:
    return WithdrawalOutcome(success=False, failure=failure)


def whole_amount(value: Any) -> int | None:
    """Integer amount from a JSON number, or None. ``500.0`` counts as 500."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def serialize_withdrawal(row: dict[str, Any]) -> dict[str, Any]:
    """camelCase view of a withdrawals row."""
    return {
        "withdrawalId": row["withdrawal_id"],
        "uid": row["uid"],
        "method": row["method"],
        "amount": row["amount"],
        "fee": row["fee"],
        "netAmount": row["net_amount"],
        "accountNumber": row["account_number"],
        "accountName": row["account_name"],
        "status": row["status"],
        "approvedBy": row.get("approved_by"),
        "approvedAt": row.get("approved_at"),
        "rejectedBy": row.get("rejected_by"),
        "rejectedAt": row.get("rejected_at"),
        "rejectionReason": row.get("rejection_reason"),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class WithdrawalEngine:
    """Request, approve and reject cash-outs."""

    def __init__(
        self,
        config: WithdrawalsConfig,
        database: LedgerStore,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

        self.requested_total = 0
        self.refunded_total = 0

    def fee_for(self, method: str, amount: int) -> float:
        return amount * self._config.fee_rates.get(method, 0.0)

    # ══════════════════════════════════════════════════════════
    #  Request
    # ══════════════════════════════════════════════════════════

    def validate_request(
        self, method: Any, amount: Any, account_number: Any,
    ) -> Failure | None:
        """Shape checks that need no account lookup."""
        if method not in self._config.methods:
            return validation("invalid_method", "Invalid withdrawal method")
        amount = whole_amount(amount)
        if amount is None:
            return validation("invalid_amount", "Invalid withdrawal amount")
        if amount < self._config.minimum_amount:
            return validation(
                "below_minimum", f"Minimum withdrawal is PKR {self._config.minimum_amount}",
            )
        if (
            not isinstance(account_number, str)
            or len(account_number.strip()) < self._config.min_account_number_length
        ):
            return validation("invalid_account_number", "Invalid account number")
        return None

    async def request(
        self,
        uid: str,
        method: Any,
        amount: Any,
        account_number: Any,
        account_name: Any = "",
        now: int | None = None,
    ) -> WithdrawalOutcome:
        """Debit ``amount`` and open a pending withdrawal."""
        now = now if now is not None else now_ms()

        invalid = self.validate_request(method, amount, account_number)
        if invalid is not None:
            return _failed(invalid)
        amount = whole_amount(amount)

        account = await self._db.get_account(uid)
        if account is None:
            return _failed(USER_NOT_FOUND)
        if account["status"] != "active":
            return _failed(ACCOUNT_SUSPENDED)
        if account["balance"] < amount:
            return _failed(INSUFFICIENT_BALANCE)
        if await self._db.get_pending_withdrawal_for(uid) is not None:
            return _failed(PENDING_EXISTS)

        fee = self.fee_for(method, amount)
        withdrawal = {
            "withdrawal_id": uuid.uuid4().hex,
            "uid": uid,
            "method": method,
            "amount": amount,
            "fee": fee,
            "net_amount": amount - fee,
            "account_number": account_number.strip(),
            "account_name": (account_name or "").strip() if isinstance(account_name, str) else "",
        }
        result = await self._db.create_withdrawal(withdrawal, now)
        if result == "pending_exists":
            return _failed(PENDING_EXISTS)
        if result != "ok":
            # Balance or status moved between the read and the guarded debit
            return _failed(INSUFFICIENT_BALANCE)

        self.requested_total += amount
        self._logger.info(
            "Withdrawal %s requested by %s: %d via %s (fee %.2f)",
            withdrawal["withdrawal_id"], uid, amount, method, fee,
        )
        return WithdrawalOutcome(success=True, data={
            "withdrawalId": withdrawal["withdrawal_id"],
            "method": method,
            "amount": amount,
            "fee": fee,
            "netAmount": withdrawal["net_amount"],
            "status": "pending",
        })

    # ══════════════════════════════════════════════════════════
    #  Review
    # ══════════════════════════════════════════════════════════

    async def _check_pending(self, withdrawal_id: str) -> Failure | None:
        row = await self._db.get_withdrawal(withdrawal_id)
        if row is None:
            return WITHDRAWAL_NOT_FOUND
        if row["status"] != "pending":
            return conflict("withdrawal_not_pending", f"Withdrawal is already {row['status']}")
        return None

    async def _resolve(
        self,
        withdrawal_id: str,
        approve: bool,
        admin_uid: str,
        reason: str | None,
        now: int,
    ) -> WithdrawalOutcome:
        failure = await self._check_pending(withdrawal_id)
        if failure is not None:
            return _failed(failure)

        row = await self._db.resolve_withdrawal(withdrawal_id, approve, admin_uid, now, reason)
        if row is None:
            # Another admin resolved it after our check
            failure = await self._check_pending(withdrawal_id)
            return _failed(failure or conflict("withdrawal_not_pending", "Withdrawal is no longer pending"))
        return WithdrawalOutcome(success=True, data={"withdrawalId": withdrawal_id})

    async def approve(
        self, withdrawal_id: str, admin_uid: str, now: int | None = None,
    ) -> WithdrawalOutcome:
        now = now if now is not None else now_ms()
        outcome = await self._resolve(withdrawal_id, True, admin_uid, None, now)
        if outcome.success:
            self._logger.info("Withdrawal %s approved by %s", withdrawal_id, admin_uid)
        return outcome

    async def reject(
        self,
        withdrawal_id: str,
        admin_uid: str,
        reason: str | None = None,
        now: int | None = None,
    ) -> WithdrawalOutcome:
        """Reject and refund the full requested amount to the balance."""
        now = now if now is not None else now_ms()
        reason = reason or "Rejected by admin"
        outcome = await self._resolve(withdrawal_id, False, admin_uid, reason, now)
        if outcome.success:
            row = await self._db.get_withdrawal(withdrawal_id)
            self.refunded_total += row["amount"]
            self._logger.info(
                "Withdrawal %s rejected by %s, refunded %d: %s",
                withdrawal_id, admin_uid, row["amount"], reason,
            )
        return outcome

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    async def history(self, uid: str) -> list[dict[str, Any]]:
        rows = await self._db.get_withdrawals(uid=uid, limit=self._config.history_limit)
        return [serialize_withdrawal(r) for r in rows]

    async def list_pending(self) -> list[dict[str, Any]]:
        """Oldest-first queue for review."""
        rows = await self._db.get_withdrawals(status="pending", limit=1000, oldest_first=True)
        return [serialize_withdrawal(r) for r in rows]

    async def list_all(self, status: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        if status == "all":
            status = None
        rows = await self._db.get_withdrawals(status=status, limit=limit)
        return [serialize_withdrawal(r) for r in rows]
