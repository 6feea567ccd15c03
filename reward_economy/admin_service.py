"""Admin operations: manual bans, user inspection, audit logs, dashboard."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .attestation_gate import BanReason
from .outcomes import USER_NOT_FOUND, Failure, validation
from .utils import day_start_ms, now_ms

if TYPE_CHECKING:
    from .attestation_gate import AttestationGate
    from .database import LedgerStore


ROLE_SUPER_ADMIN = "super_admin"
ROLE_MODERATOR = "moderator"
ADMIN_ROLES = frozenset({ROLE_SUPER_ADMIN, ROLE_MODERATOR})

SEARCH_FIELDS = {"uid": "uid", "phone": "phone", "referralCode": "referral_code"}


class AdminService:
    def __init__(
        self,
        database: LedgerStore,
        gate: AttestationGate,
        logger: logging.Logger,
    ) -> None:
        self._db = database
        self._gate = gate
        self._logger = logger

    async def role_of(self, uid: str) -> str | None:
        role = await self._db.get_admin_role(uid)
        return role if role in ADMIN_ROLES else None

    # ══════════════════════════════════════════════════════════
    #  Ban / Unban
    # ══════════════════════════════════════════════════════════

    async def ban(
        self, target_uid: str, reason: str, admin_uid: str, now: int | None = None,
    ) -> Failure | None:
        if not target_uid:
            return validation("missing_target", "targetUid is required")
        if reason not in BanReason.ALL:
            return validation("invalid_ban_reason", f"Invalid ban reason: {reason}")
        await self._gate.ban_user(
            target_uid,
            reason,
            {"bannedBy": admin_uid, "source": "admin_panel"},
            banned_by=admin_uid,
            now=now,
        )
        return None

    async def unban(
        self, target_uid: str, admin_uid: str, now: int | None = None,
    ) -> Failure | None:
        if not target_uid:
            return validation("missing_target", "targetUid is required")
        if await self._db.get_account(target_uid) is None:
            return USER_NOT_FOUND
        return await self._gate.unban_user(target_uid, admin_uid, now=now)

    # ══════════════════════════════════════════════════════════
    #  Inspection
    # ══════════════════════════════════════════════════════════

    async def user_detail(self, uid: str) -> dict[str, Any] | None:
        """Account, referral record, ban, recent tasks and ledger for one uid."""
        account = await self._db.get_account(uid)
        referral = await self._db.get_referral(uid)
        ban = await self._db.get_ban(uid)
        if account is None and ban is None:
            return None
        return {
            "user": account,
            "referral": referral,
            "ban": ban,
            "recentTasks": await self._db.get_recent_task_log(uid, 20),
            "recentLedger": await self._db.get_ledger_entries(uid, 20),
        }

    async def search_users(self, query: str, field: str = "uid") -> list[dict[str, Any]] | None:
        """Exact match on uid, phone or referralCode; None for an unknown field."""
        column = SEARCH_FIELDS.get(field)
        if column is None:
            return None
        return await self._db.search_accounts(column, query.strip())

    async def fraud_logs(self, limit: int = 50) -> list[dict[str, Any]]:
        return await self._db.get_bans(limit)

    async def action_logs(self, limit: int = 50) -> list[dict[str, Any]]:
        return await self._db.get_admin_actions(limit)

    async def dashboard_kpis(self, now: int | None = None) -> dict[str, int]:
        now = now if now is not None else now_ms()
        counts = await self._db.get_dashboard_counts(day_start_ms(now))
        return {
            "totalUsers": counts["total_users"],
            "activeBans": counts["active_bans"],
            "todayNewUsers": counts["today_new_users"],
            "todayBans": counts["today_bans"],
            "todayTaskClaims": counts["today_task_claims"],
        }
