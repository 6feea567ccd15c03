"""HTTP clients for the external collaborators.

Identity provider (token verification, credential disable/enable), device
integrity verifier and IP-reputation lookup. Each owns one aiohttp session
created in ``start()``. Transport failures and 5xx responses raise
``VerifierUnavailable``; callers treat that as an internal error, never as a
fraud verdict. Tests replace these clients with AsyncMocks.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import aiohttp

if TYPE_CHECKING:
    from .config import CollaboratorConfig


class VerifierUnavailable(Exception):
    """A collaborator could not be reached or answered with a server error."""


@dataclass(frozen=True)
class IntegrityVerdict:
    device_integrity: bool
    app_integrity: bool


@dataclass(frozen=True)
class IpReputation:
    is_vpn: bool = False
    is_proxy: bool = False
    is_datacenter: bool = False

    @property
    def suspicious(self) -> bool:
        return self.is_vpn or self.is_proxy or self.is_datacenter


class _CollaboratorClient:
    """Shared session handling for the collaborator clients."""

    name = "collaborator"

    def __init__(self, config: CollaboratorConfig, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session."""
        headers: dict[str, str] = {}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"
        self._session = aiohttp.ClientSession(
            base_url=self._config.base_url,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _request(
        self, method: str, path: str, payload: dict | None = None,
    ) -> tuple[int, Any]:
        """Send one JSON request; return (status, body) for any status < 500."""
        if not self._session:
            raise VerifierUnavailable(f"{self.name} client not started")
        try:
            async with self._session.request(method, path, json=payload) as resp:
                if resp.status >= 500:
                    raise VerifierUnavailable(f"{self.name} returned HTTP {resp.status}")
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = None
                return resp.status, body
        except aiohttp.ClientError as e:
            raise VerifierUnavailable(f"{self.name} request failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise VerifierUnavailable(f"{self.name} request timed out") from e


# ══════════════════════════════════════════════════════════
#  Identity Provider
# ══════════════════════════════════════════════════════════

class IdentityClient(_CollaboratorClient):
    name = "identity"

    async def verify_token(self, token: str) -> str | None:
        """Resolve a bearer token to a uid, or None if the token is rejected."""
        if not token:
            return None
        status, body = await self._request("POST", "/verify", {"token": token})
        if status != 200 or not isinstance(body, dict):
            return None
        uid = body.get("uid")
        return str(uid) if uid else None

    async def set_disabled(self, uid: str, disabled: bool) -> None:
        """Disable or re-enable the uid's sign-in credential."""
        status, _ = await self._request(
            "POST", f"/users/{uid}/disabled", {"disabled": disabled},
        )
        if status >= 400:
            raise VerifierUnavailable(f"identity refused credential update for {uid}: HTTP {status}")


# ══════════════════════════════════════════════════════════
#  Device Integrity
# ══════════════════════════════════════════════════════════

class IntegrityClient(_CollaboratorClient):
    name = "integrity"

    async def decode(self, integrity_token: str) -> IntegrityVerdict | None:
        """Decode an attestation token.

        Returns None when the verifier rejects the token (malformed, expired,
        replayed); raises VerifierUnavailable when it cannot answer at all.
        """
        status, body = await self._request(
            "POST", "/decode", {"integrityToken": integrity_token},
        )
        if status != 200 or not isinstance(body, dict):
            self._logger.info("Integrity verifier rejected token (HTTP %d)", status)
            return None
        return IntegrityVerdict(
            device_integrity=bool(body.get("deviceIntegrity")),
            app_integrity=bool(body.get("appIntegrity")),
        )


# ══════════════════════════════════════════════════════════
#  IP Reputation
# ══════════════════════════════════════════════════════════

class IpReputationClient(_CollaboratorClient):
    name = "ip_reputation"

    async def lookup(self, ip: str) -> IpReputation:
        status, body = await self._request("GET", f"/ip/{quote(ip, safe='')}")
        if status != 200 or not isinstance(body, dict):
            # Unknown address; no signal either way
            return IpReputation()
        return IpReputation(
            is_vpn=bool(body.get("isVpn")),
            is_proxy=bool(body.get("isProxy")),
            is_datacenter=bool(body.get("isDatacenter")),
        )
