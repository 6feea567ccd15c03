"""Referral tree: codes, ancestor chains, signup bonus and commission cascade."""

from __future__ import annotations

import logging
import math
import secrets
from decimal import Decimal
from typing import TYPE_CHECKING

from .utils import now_ms

if TYPE_CHECKING:
    from .config import ReferralsConfig
    from .database import LedgerStore


CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # no 0/O, 1/I/L


def commission_for(reward: int, rate: float) -> int:
    """floor(reward × rate) without binary float drift."""
    return math.floor(Decimal(reward) * Decimal(str(rate)))


class ReferralEngine:
    """Owns the inviter graph and every payout that flows up it."""

    def __init__(
        self,
        config: ReferralsConfig,
        database: LedgerStore,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

        self.commissions_paid = 0
        self.commission_total = 0

    # ══════════════════════════════════════════════════════════
    #  Codes
    # ══════════════════════════════════════════════════════════

    def generate_code(self) -> str:
        suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(self._config.code_length))
        return f"{self._config.code_prefix}{suffix}"

    async def validate_referral_code(self, code: str | None) -> str | None:
        """Owner uid of an active code, or None."""
        if not code:
            return None
        row = await self._db.get_referral_code(code.strip().upper())
        if row is None or not row["active"]:
            return None
        return row["owner_uid"]

    # ══════════════════════════════════════════════════════════
    #  Chain
    # ══════════════════════════════════════════════════════════

    async def build_chain(self, inviter_uid: str) -> dict[str, str]:
        """Ancestors keyed L1..Ln, walking inviter links upward.

        Stops at the first missing record or root, and on any uid already
        seen so a corrupt graph cannot produce a cycle.
        """
        chain = {"L1": inviter_uid}
        seen = {inviter_uid}
        current = inviter_uid
        for level in range(2, self._config.max_chain_depth + 1):
            record = await self._db.get_referral(current)
            if record is None or not record["inviter_uid"]:
                break
            parent = record["inviter_uid"]
            if parent in seen:
                self._logger.warning("Referral cycle at %s → %s, chain truncated", current, parent)
                break
            chain[f"L{level}"] = parent
            seen.add(parent)
            current = parent
        return chain

    # ══════════════════════════════════════════════════════════
    #  Payouts
    # ══════════════════════════════════════════════════════════

    async def credit_signup_bonus(
        self, inviter_uid: str, new_uid: str, now: int | None = None,
    ) -> int | None:
        """Pay the direct inviter for a new verified signup."""
        now = now if now is not None else now_ms()
        amount = self._config.signup_bonus
        balance = await self._db.credit_signup_bonus(inviter_uid, new_uid, amount, now)
        if balance is None:
            self._logger.warning("Signup bonus skipped: inviter %s has no account", inviter_uid)
            return None
        self._logger.info("Signup bonus +%d to %s for inviting %s", amount, inviter_uid, new_uid)
        return balance

    async def cascade_commission(
        self,
        source_uid: str,
        reward_amount: int,
        task_type: str | None,
        job_id: str,
        now: int | None = None,
    ) -> dict[str, int]:
        """Pay each configured level its share of ``reward_amount``.

        Levels commit independently. A level already paid for ``job_id`` is
        skipped by the store, so re-running a job is safe. Store errors
        propagate to the caller after earlier levels have committed.
        Returns {level: amount} for levels paid by this call.
        """
        now = now if now is not None else now_ms()
        record = await self._db.get_referral(source_uid)
        if record is None:
            return {}
        chain = record["referral_chain"]

        paid: dict[str, int] = {}
        for level, rate in self._config.commission_rates.items():
            referrer = chain.get(level)
            if not referrer:
                continue
            commission = commission_for(reward_amount, rate)
            if commission <= 0:
                continue

            balance = await self._db.credit(
                referrer,
                commission,
                "referral_commission",
                now,
                task_type=task_type,
                level=level,
                source_uid=source_uid,
                reference_id=job_id,
                metadata={"rate": rate},
            )
            if balance is None:
                self._logger.debug(
                    "Commission %s for %s skipped (already paid or no account)", level, referrer,
                )
                continue

            paid[level] = commission
            self.commissions_paid += 1
            self.commission_total += commission
            self._logger.info(
                "Commission %s +%d to %s from %s (%s)",
                level, commission, referrer, source_uid, task_type,
            )
        return paid
