"""Device attestation and fraud bans.

Every app launch presents an attestation: the identity, a device-integrity
token, a hardware fingerprint and whatever the client itself detected.
Checks run in a fixed order and stop at the first failure; every failure
is a permanent ban. A device is bound to the first uid that passes, and any
other uid presenting it afterwards is banned as a multi-account.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .outcomes import Failure, conflict
from .utils import is_private_ip, now_ms

if TYPE_CHECKING:
    from .config import SecurityConfig
    from .database import LedgerStore
    from .verifiers import IdentityClient, IntegrityClient, IpReputationClient


class BanReason:
    ROOT_DETECTED = "root_detected"
    EMULATOR_DETECTED = "emulator_detected"
    VPN_DETECTED = "vpn_detected"
    CLONE_DETECTED = "clone_detected"
    PARALLEL_SPACE = "parallel_space_detected"
    HOOKING_DETECTED = "hooking_detected"
    INTEGRITY_FAILED = "integrity_failed"
    MULTI_ACCOUNT = "multi_account_device"
    ADMIN_MANUAL = "admin_manual_ban"
    SUSPICIOUS_BEHAVIOR = "suspicious_behavior"

    ALL = frozenset({
        ROOT_DETECTED, EMULATOR_DETECTED, VPN_DETECTED, CLONE_DETECTED,
        PARALLEL_SPACE, HOOKING_DETECTED, INTEGRITY_FAILED, MULTI_ACCOUNT,
        ADMIN_MANUAL, SUSPICIOUS_BEHAVIOR,
    })


ACCOUNT_BANNED_MESSAGE = "Account is banned"

FINGERPRINT_FIELDS = (
    "androidId",
    "buildFingerprint",
    "buildModel",
    "buildManufacturer",
    "screenResolution",
)


def device_key(fingerprint: dict[str, Any] | None) -> str:
    """Stable device identifier derived from the hardware fingerprint."""
    fingerprint = fingerprint or {}
    raw = "|".join(str(fingerprint.get(field) or "") for field in FINGERPRINT_FIELDS)
    return "dev_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SecurityVerdict:
    allowed: bool
    banned: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"allowed": self.allowed, "banned": self.banned}
        if self.reason:
            result["reason"] = self.reason
        return result


@dataclass(frozen=True)
class ReportOutcome:
    banned: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"banned": self.banned}
        if self.reason:
            result["reason"] = self.reason
        return result


class AttestationGate:
    """Zero-tolerance device gate: verify, bind, or ban."""

    def __init__(
        self,
        config: SecurityConfig,
        database: LedgerStore,
        identity: IdentityClient,
        integrity: IntegrityClient,
        ip_reputation: IpReputationClient,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._identity = identity
        self._integrity = integrity
        self._ip_reputation = ip_reputation
        self._logger = logger

        self.bans_issued = 0
        self.attestations_passed = 0

    def map_violation(self, violation: str) -> str:
        return self._config.violation_reasons.get(violation, BanReason.SUSPICIOUS_BEHAVIOR)

    # ══════════════════════════════════════════════════════════
    #  Attestation
    # ══════════════════════════════════════════════════════════

    async def attest(
        self,
        uid: str,
        integrity_token: str | None,
        device_fingerprint: dict[str, Any] | None,
        app_version: int | None,
        detected_issues: list[str] | None,
        client_ip: str,
        now: int | None = None,
    ) -> SecurityVerdict:
        """Run the attestation checks in order, banning on the first failure.

        VerifierUnavailable from a collaborator propagates before anything
        is written.
        """
        now = now if now is not None else now_ms()
        fingerprint = device_fingerprint or {}

        account = await self._db.get_account(uid)
        if account and account["status"] == "banned":
            return SecurityVerdict(allowed=False, banned=True, reason=ACCOUNT_BANNED_MESSAGE)

        if detected_issues:
            reason = self.map_violation(detected_issues[0])
            await self.ban_user(uid, reason, {
                "detectedIssues": list(detected_issues),
                "clientIp": client_ip,
                "deviceFingerprint": fingerprint,
            }, now=now)
            return SecurityVerdict(allowed=False, banned=True, reason=reason)

        verdict = None
        if integrity_token:
            verdict = await self._integrity.decode(integrity_token)
        if verdict is None or not verdict.device_integrity:
            await self.ban_user(uid, BanReason.INTEGRITY_FAILED, {
                "integrityVerdict": None if verdict is None else {
                    "deviceIntegrity": verdict.device_integrity,
                    "appIntegrity": verdict.app_integrity,
                },
                "clientIp": client_ip,
                "deviceFingerprint": fingerprint,
            }, now=now)
            return SecurityVerdict(allowed=False, banned=True, reason=BanReason.INTEGRITY_FAILED)
        if not verdict.app_integrity:
            await self.ban_user(uid, BanReason.CLONE_DETECTED, {
                "integrityVerdict": {"deviceIntegrity": True, "appIntegrity": False},
                "clientIp": client_ip,
                "deviceFingerprint": fingerprint,
            }, now=now)
            return SecurityVerdict(allowed=False, banned=True, reason=BanReason.CLONE_DETECTED)

        if not (self._config.skip_private_ip_lookup and is_private_ip(client_ip)):
            reputation = await self._ip_reputation.lookup(client_ip)
            if reputation.suspicious:
                await self.ban_user(uid, BanReason.VPN_DETECTED, {
                    "ipCheck": {
                        "isVpn": reputation.is_vpn,
                        "isProxy": reputation.is_proxy,
                        "isDatacenter": reputation.is_datacenter,
                    },
                    "clientIp": client_ip,
                    "deviceFingerprint": fingerprint,
                }, now=now)
                return SecurityVerdict(allowed=False, banned=True, reason=BanReason.VPN_DETECTED)

        key = device_key(fingerprint)
        bound = await self._db.bind_device(key, uid, client_ip, app_version, fingerprint, now)
        if not bound:
            binding = await self._db.get_device_binding(key)
            existing_uid = binding["bound_uid"] if binding else None
            await self.ban_user(uid, BanReason.MULTI_ACCOUNT, {
                "deviceKey": key,
                "existingUid": existing_uid,
                "clientIp": client_ip,
                "deviceFingerprint": fingerprint,
            }, now=now)
            return SecurityVerdict(allowed=False, banned=True, reason=BanReason.MULTI_ACCOUNT)

        self.attestations_passed += 1
        return SecurityVerdict(allowed=True, banned=False)

    async def process_report(
        self,
        uid: str,
        violations: list[str] | None,
        evidence: dict[str, Any] | None,
        client_ip: str,
        now: int | None = None,
    ) -> ReportOutcome:
        """Ban on a client-detected violation; the first one names the reason."""
        if not violations:
            return ReportOutcome(banned=False)

        account = await self._db.get_account(uid)
        if account and account["status"] == "banned":
            return ReportOutcome(banned=True, reason=account.get("ban_reason"))

        violation = violations[0]
        reason = self.map_violation(violation)
        await self.ban_user(uid, reason, {
            **(evidence or {}),
            "clientIp": client_ip,
            "reportedViolation": violation,
        }, now=now)
        return ReportOutcome(banned=True, reason=reason)

    # ══════════════════════════════════════════════════════════
    #  Ban / Unban
    # ══════════════════════════════════════════════════════════

    async def ban_user(
        self,
        uid: str,
        reason: str,
        evidence: dict[str, Any],
        banned_by: str = "system",
        now: int | None = None,
    ) -> None:
        """Ban ``uid`` and disable its sign-in credential."""
        now = now if now is not None else now_ms()
        await self._db.ban_account(uid, reason, evidence, banned_by, now)
        self.bans_issued += 1
        self._logger.warning("Banned %s: %s (by %s)", uid, reason, banned_by)

        try:
            await self._identity.set_disabled(uid, True)
        except Exception:
            self._logger.exception("Failed to disable credential for %s", uid)

    async def unban_user(
        self, uid: str, admin_uid: str, now: int | None = None,
    ) -> Failure | None:
        """Restore a banned account. Returns a Failure if it was not banned."""
        now = now if now is not None else now_ms()
        if not await self._db.unban_account(uid, admin_uid, now):
            return conflict("not_banned", "Account is not banned")
        self._logger.info("Unbanned %s (by %s)", uid, admin_uid)

        try:
            await self._identity.set_disabled(uid, False)
        except Exception:
            self._logger.exception("Failed to re-enable credential for %s", uid)
        return None
