"""Account registration and profiles.

A new account must come in through an active referral code. Registration
fixes the ancestor chain, issues the account its own code and pays the
direct inviter's signup bonus.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .attestation_gate import device_key
from .outcomes import Failure, conflict, validation
from .task_state import TaskCycle
from .utils import now_ms

if TYPE_CHECKING:
    from .database import LedgerStore
    from .referral_engine import ReferralEngine


MAX_CODE_ATTEMPTS = 5

USER_EXISTS = conflict("user_exists", "User already exists")
INVALID_REFERRAL_CODE = validation("invalid_referral_code", "Invalid or inactive referral code")


@dataclass(frozen=True)
class RegistrationOutcome:
    success: bool
    referral_code: str | None = None
    failure: Failure | None = None


class Registration:
    """Creates accounts and serves their profiles."""

    def __init__(
        self,
        database: LedgerStore,
        referrals: ReferralEngine,
        logger: logging.Logger,
    ) -> None:
        self._db = database
        self._referrals = referrals
        self._logger = logger

        self.accounts_created = 0

    async def register(
        self,
        uid: str,
        phone: str,
        referral_code: str | None,
        device_fingerprint: dict[str, Any] | None,
        client_ip: str,
        now: int | None = None,
    ) -> RegistrationOutcome:
        now = now if now is not None else now_ms()

        if await self._db.get_account(uid) is not None:
            return RegistrationOutcome(success=False, failure=USER_EXISTS)

        inviter_uid = await self._referrals.validate_referral_code(referral_code)
        if inviter_uid is None:
            return RegistrationOutcome(success=False, failure=INVALID_REFERRAL_CODE)
        used_code = referral_code.strip().upper()

        chain = await self._referrals.build_chain(inviter_uid)
        cycle = TaskCycle.fresh(now)

        own_code = None
        for _ in range(MAX_CODE_ATTEMPTS):
            candidate = self._referrals.generate_code()
            created = await self._db.register_account(
                uid, phone, candidate, used_code, inviter_uid, chain, cycle, now,
            )
            if created:
                own_code = candidate
                break
            if await self._db.get_account(uid) is not None:
                return RegistrationOutcome(success=False, failure=USER_EXISTS)
            self._logger.debug("Referral code %s collided, regenerating", candidate)
        if own_code is None:
            raise RuntimeError(f"Could not allocate a unique referral code for {uid}")

        self.accounts_created += 1
        self._logger.info(
            "Registered %s via %s (inviter %s, depth %d, device %s, ip %s)",
            uid, used_code, inviter_uid, len(chain), device_key(device_fingerprint), client_ip,
        )

        await self._referrals.credit_signup_bonus(inviter_uid, uid, now=now)
        return RegistrationOutcome(success=True, referral_code=own_code)

    async def get_profile(self, uid: str) -> dict[str, Any] | None:
        """Client-safe view of the account, or None."""
        account = await self._db.get_account(uid)
        if account is None:
            return None
        referral = await self._db.get_referral(uid)
        return {
            "uid": account["uid"],
            "phone": account["phone"],
            "status": account["status"],
            "balance": account["balance"],
            "totalEarned": account["total_earned"],
            "referralCode": account["referral_code"],
            "invitedBy": account["invited_by"],
            "taskProgress": TaskCycle.from_account(account).as_dict(),
            "nextCycleAt": account["next_cycle_at"],
            "nextTaskAt": account["next_task_at"],
            "verifiedInvitesL1": referral["verified_invites_l1"] if referral else 0,
            "createdAt": account["created_at"],
        }
