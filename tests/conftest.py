"""Shared test fixtures for reward-economy."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from reward_economy.admin_service import AdminService
from reward_economy.attestation_gate import AttestationGate
from reward_economy.commission_queue import CommissionQueue
from reward_economy.config import EconomyConfig
from reward_economy.database import LedgerStore
from reward_economy.referral_engine import ReferralEngine
from reward_economy.registration import Registration
from reward_economy.spin_engine import SpinEngine
from reward_economy.task_engine import TaskEngine
from reward_economy.task_state import TaskCycle
from reward_economy.verifiers import IntegrityVerdict, IpReputation
from reward_economy.withdrawal_engine import WithdrawalEngine

NOW = 1_700_000_000_000  # fixed epoch ms used across tests
MINUTE = 60_000
HOUR = 60 * MINUTE


# ── Minimal config dict matching EconomyConfig schema ────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "database": {"path": ":memory:"},
        "server": {"host": "127.0.0.1", "port": 0},
        "tasks": {
            "rewards": {"task_1": 20, "task_2": 20, "task_3": 50},
            "cooldown_seconds": 180,
            "cycle_hours": 24,
            "invite_challenge_target": 15,
        },
        "referrals": {
            "commission_rates": {"L1": 0.10, "L2": 0.05, "L3": 0.02},
            "signup_bonus": 3,
        },
        "commissions": {"poll_interval_seconds": 0.05, "max_attempts": 3, "backoff_seconds": 10},
        "withdrawals": {"minimum_amount": 500},
        "identity": {"base_url": "http://identity.test"},
        "integrity": {"base_url": "http://integrity.test"},
        "ip_reputation": {"base_url": "http://ip.test"},
        "rate_limits": {"general": 1000, "auth": 1000, "tasks": 1000, "security": 1000},
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = {**base[key], **value}
        else:
            base[key] = value
    return base


async def seed_account(
    db: LedgerStore,
    uid: str,
    balance: int = 0,
    status: str = "active",
    inviter: str | None = None,
    verified_invites: int = 0,
    now: int = NOW,
    **fields: Any,
) -> None:
    """Create an account directly, bypassing registration.

    ``balance`` is seeded through a ledger entry so the ledger law holds.
    Extra keyword arguments are written straight onto the accounts row.
    """
    await db.create_root_account(uid, f"+92-{uid}", f"KC{uid.upper()}", now)
    if balance:
        await db.credit(uid, balance, "task_reward", now, metadata={"seed": True})

    chain: dict[str, str] = {}
    if inviter:
        parent = await db.get_referral(inviter)
        chain = {"L1": inviter}
        if parent:
            for level, ancestor in sorted(parent["referral_chain"].items()):
                depth = int(level[1:]) + 1
                if depth <= 6:
                    chain[f"L{depth}"] = ancestor

    loop = asyncio.get_running_loop()

    def _set_fields() -> None:
        conn = db._get_connection()
        try:
            updates = {"status": status, **fields}
            if inviter:
                updates["invited_by"] = inviter
            assignments = ", ".join(f"{k} = ?" for k in updates)
            conn.execute(
                f"UPDATE accounts SET {assignments} WHERE uid = ?",
                (*updates.values(), uid),
            )
            conn.execute(
                "UPDATE referrals SET inviter_uid = ?, referral_chain = ?, verified_invites_l1 = ? "
                "WHERE uid = ?",
                (inviter, json.dumps(chain), verified_invites, uid),
            )
            conn.commit()
        finally:
            conn.close()

    await loop.run_in_executor(None, _set_fields)


async def set_cycle(db: LedgerStore, uid: str, cycle: TaskCycle) -> None:
    """Overwrite an account's task state."""
    loop = asyncio.get_running_loop()

    def _sync() -> None:
        conn = db._get_connection()
        try:
            conn.execute(
                "UPDATE accounts SET task_progress = ?, next_cycle_at = ?, next_task_at = ? "
                "WHERE uid = ?",
                (cycle.progress_json(), cycle.next_cycle_at, cycle.next_task_at, uid),
            )
            conn.commit()
        finally:
            conn.close()

    await loop.run_in_executor(None, _sync)


# ── Config & database ────────────────────────────────────────

@pytest.fixture
def sample_config_dict() -> dict:
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> EconomyConfig:
    return EconomyConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_economy.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[LedgerStore, None]:
    """Provide an initialized database with temp file."""
    db = LedgerStore(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


# ── Collaborators ────────────────────────────────────────────

@pytest.fixture
def mock_identity() -> AsyncMock:
    """Identity provider: ``token-<uid>`` verifies as ``<uid>``."""
    identity = AsyncMock()

    async def _verify(token: str) -> str | None:
        if token and token.startswith("token-"):
            return token[len("token-"):]
        return None

    identity.verify_token.side_effect = _verify
    identity.set_disabled.return_value = None
    return identity


@pytest.fixture
def mock_integrity() -> AsyncMock:
    integrity = AsyncMock()
    integrity.decode.return_value = IntegrityVerdict(device_integrity=True, app_integrity=True)
    return integrity


@pytest.fixture
def mock_ip_reputation() -> AsyncMock:
    ip_reputation = AsyncMock()
    ip_reputation.lookup.return_value = IpReputation()
    return ip_reputation


# ── Engines ──────────────────────────────────────────────────

@pytest.fixture
def referral_engine(sample_config: EconomyConfig, database: LedgerStore) -> ReferralEngine:
    return ReferralEngine(sample_config.referrals, database, logging.getLogger("test"))


@pytest.fixture
def commission_queue(
    sample_config: EconomyConfig, database: LedgerStore, referral_engine: ReferralEngine,
) -> CommissionQueue:
    return CommissionQueue(
        sample_config.commissions, database, referral_engine, logging.getLogger("test"),
    )


@pytest.fixture
def task_engine(sample_config: EconomyConfig, database: LedgerStore) -> TaskEngine:
    return TaskEngine(sample_config.tasks, database, logging.getLogger("test"))


@pytest.fixture
def spin_engine(sample_config: EconomyConfig, database: LedgerStore) -> SpinEngine:
    return SpinEngine(
        sample_config.tasks, sample_config.spin, database, logging.getLogger("test"),
    )


@pytest.fixture
def registration(database: LedgerStore, referral_engine: ReferralEngine) -> Registration:
    return Registration(database, referral_engine, logging.getLogger("test"))


@pytest.fixture
def withdrawal_engine(sample_config: EconomyConfig, database: LedgerStore) -> WithdrawalEngine:
    return WithdrawalEngine(sample_config.withdrawals, database, logging.getLogger("test"))


@pytest.fixture
def attestation_gate(
    sample_config: EconomyConfig,
    database: LedgerStore,
    mock_identity: AsyncMock,
    mock_integrity: AsyncMock,
    mock_ip_reputation: AsyncMock,
) -> AttestationGate:
    return AttestationGate(
        sample_config.security,
        database,
        mock_identity,
        mock_integrity,
        mock_ip_reputation,
        logging.getLogger("test"),
    )


@pytest.fixture
def admin_service(database: LedgerStore, attestation_gate: AttestationGate) -> AdminService:
    return AdminService(database, attestation_gate, logging.getLogger("test"))
