"""SQLite ledger store for reward-economy.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Every balance change is written in the same transaction as its ledger
entry, so SUM(ledger_entries.amount) == accounts.balance for every uid.
Account rows carry a ``cycle_version`` counter bumped only when the task
cycle changes; a claim validated against a snapshot commits with
``expected_cycle_version`` and gets ``None`` back when another claim got
there first. Balance credits and debits leave it alone.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from typing import Any

from .task_state import TaskCycle
from .utils import dumps, loads


def new_id() -> str:
    return uuid.uuid4().hex


class LedgerStore:
    """SQLite-backed persistence for the economy service."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            # ── Accounts & referrals ─────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    uid TEXT PRIMARY KEY,
                    phone TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    total_earned INTEGER NOT NULL DEFAULT 0,
                    task_progress TEXT NOT NULL,
                    next_cycle_at INTEGER NOT NULL DEFAULT 0,
                    next_task_at INTEGER NOT NULL DEFAULT 0,
                    last_task_at INTEGER,
                    last_cycle_start_at INTEGER,
                    referral_code TEXT,
                    invited_by TEXT,
                    used_referral_code TEXT,
                    ban_reason TEXT,
                    banned_at INTEGER,
                    unbanned_at INTEGER,
                    unbanned_by TEXT,
                    cycle_version INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_accounts_created_at ON accounts(created_at)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS referral_codes (
                    code TEXT PRIMARY KEY,
                    owner_uid TEXT NOT NULL,
                    active BOOLEAN DEFAULT 1,
                    used_count INTEGER DEFAULT 0,
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS referrals (
                    uid TEXT PRIMARY KEY,
                    inviter_uid TEXT,
                    referral_chain TEXT NOT NULL DEFAULT '{}',
                    children_l1 TEXT NOT NULL DEFAULT '[]',
                    verified_invites_l1 INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)

            # ── Ledger ───────────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL UNIQUE,
                    uid TEXT NOT NULL,
                    type TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    balance_after INTEGER NOT NULL,
                    task_type TEXT,
                    level TEXT,
                    source_uid TEXT,
                    reference_id TEXT,
                    metadata TEXT,
                    created_at INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ledger_uid ON ledger_entries(uid, id)"
            )
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_commission_once "
                "ON ledger_entries(reference_id, level) WHERE type = 'referral_commission'"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_log (
                    uid TEXT NOT NULL,
                    cycle_date TEXT NOT NULL,
                    task_type TEXT NOT NULL,
                    reward INTEGER NOT NULL,
                    claimed_at INTEGER NOT NULL,
                    UNIQUE(uid, cycle_date, task_type)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_task_log_claimed ON task_log(claimed_at)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS spin_results (
                    spin_id TEXT PRIMARY KEY,
                    uid TEXT NOT NULL,
                    prize INTEGER NOT NULL,
                    label TEXT NOT NULL,
                    weights TEXT NOT NULL,
                    roll REAL,
                    claimed_at INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_spin_uid ON spin_results(uid, claimed_at)"
            )

            # ── Security ─────────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS device_bindings (
                    device_key TEXT PRIMARY KEY,
                    bound_uid TEXT NOT NULL,
                    last_seen INTEGER NOT NULL,
                    last_ip TEXT,
                    app_version INTEGER,
                    fingerprint TEXT,
                    risk_score INTEGER DEFAULT 0,
                    created_at INTEGER NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bans (
                    uid TEXT PRIMARY KEY,
                    reason TEXT NOT NULL,
                    evidence TEXT,
                    banned_at INTEGER NOT NULL,
                    banned_by TEXT NOT NULL,
                    unbanned_at INTEGER,
                    unbanned_by TEXT
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bans_banned_at ON bans(banned_at)"
            )

            # ── Withdrawals ──────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS withdrawals (
                    withdrawal_id TEXT PRIMARY KEY,
                    uid TEXT NOT NULL,
                    method TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    fee REAL NOT NULL,
                    net_amount REAL NOT NULL,
                    account_number TEXT NOT NULL,
                    account_name TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    approved_by TEXT,
                    approved_at INTEGER,
                    rejected_by TEXT,
                    rejected_at INTEGER,
                    rejection_reason TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_withdrawals_one_pending "
                "ON withdrawals(uid) WHERE status = 'pending'"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_withdrawals_status ON withdrawals(status, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_withdrawals_uid ON withdrawals(uid, created_at)"
            )

            # ── Admin ────────────────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS admins (
                    uid TEXT PRIMARY KEY,
                    role TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS admin_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    admin_uid TEXT NOT NULL,
                    action TEXT NOT NULL,
                    target_uid TEXT,
                    target_id TEXT,
                    details TEXT,
                    created_at INTEGER NOT NULL
                )
            """)

            # ── Commission queue ─────────────────────────────
            conn.execute("""
                CREATE TABLE IF NOT EXISTS commission_jobs (
                    job_id TEXT PRIMARY KEY,
                    source_uid TEXT NOT NULL,
                    reward_amount INTEGER NOT NULL,
                    task_type TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    available_at INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_commission_due "
                "ON commission_jobs(status, available_at)"
            )

            conn.commit()
            self._logger.info("Database tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Shared helpers (call inside an open transaction)
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _account_from_row(row: sqlite3.Row | None) -> dict | None:
        if row is None:
            return None
        account = dict(row)
        account["task_progress"] = loads(account.get("task_progress"), {})
        return account

    @staticmethod
    def _insert_ledger(
        conn: sqlite3.Connection,
        uid: str,
        entry_type: str,
        amount: int,
        now: int,
        task_type: str | None = None,
        level: str | None = None,
        source_uid: str | None = None,
        reference_id: str | None = None,
        metadata: dict | None = None,
    ) -> int:
        """Append a ledger entry snapshotting the post-mutation balance."""
        row = conn.execute(
            "SELECT balance FROM accounts WHERE uid = ?", (uid,),
        ).fetchone()
        balance_after = row["balance"]
        conn.execute(
            "INSERT INTO ledger_entries (entry_id, uid, type, amount, balance_after, "
            "task_type, level, source_uid, reference_id, metadata, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                new_id(), uid, entry_type, amount, balance_after,
                task_type, level, source_uid, reference_id,
                dumps(metadata) if metadata else None, now,
            ),
        )
        return balance_after

    @staticmethod
    def _insert_commission_job(
        conn: sqlite3.Connection,
        source_uid: str,
        reward_amount: int,
        task_type: str | None,
        now: int,
    ) -> str:
        job_id = new_id()
        conn.execute(
            "INSERT INTO commission_jobs (job_id, source_uid, reward_amount, task_type, "
            "status, attempts, available_at, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?)",
            (job_id, source_uid, reward_amount, task_type, now, now, now),
        )
        return job_id

    @staticmethod
    def _insert_admin_action(
        conn: sqlite3.Connection,
        admin_uid: str,
        action: str,
        now: int,
        target_uid: str | None = None,
        target_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        conn.execute(
            "INSERT INTO admin_actions (admin_uid, action, target_uid, target_id, details, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (admin_uid, action, target_uid, target_id, dumps(details) if details else None, now),
        )

    # ══════════════════════════════════════════════════════════
    #  Account Operations
    # ══════════════════════════════════════════════════════════

    async def get_account(self, uid: str) -> dict | None:
        """Return account row as dict (task_progress decoded), or None."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM accounts WHERE uid = ?", (uid,),
                ).fetchone()
                return self._account_from_row(row)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_balance(self, uid: str) -> int:
        """Return balance integer, 0 if account doesn't exist."""
        account = await self.get_account(uid)
        return account["balance"] if account else 0

    async def register_account(
        self,
        uid: str,
        phone: str,
        own_code: str,
        used_code: str,
        inviter_uid: str,
        referral_chain: dict[str, str],
        cycle: TaskCycle,
        now: int,
    ) -> bool:
        """Create account, referral record and own referral code in one commit.

        Returns False if the uid or the generated code already exists.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO accounts (uid, phone, status, task_progress, next_cycle_at, "
                    "next_task_at, last_cycle_start_at, referral_code, invited_by, "
                    "used_referral_code, created_at, updated_at) "
                    "VALUES (?, ?, 'active', ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        uid, phone, cycle.progress_json(), cycle.next_cycle_at,
                        cycle.next_task_at, cycle.last_cycle_start_at, own_code,
                        inviter_uid, used_code, now, now,
                    ),
                )
                conn.execute(
                    "INSERT INTO referrals (uid, inviter_uid, referral_chain, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (uid, inviter_uid, dumps(referral_chain), now, now),
                )
                conn.execute(
                    "INSERT INTO referral_codes (code, owner_uid, active, used_count, created_at) "
                    "VALUES (?, ?, 1, 0, ?)",
                    (own_code, uid, now),
                )
                conn.execute(
                    "UPDATE referral_codes SET used_count = used_count + 1 WHERE code = ?",
                    (used_code,),
                )
                conn.commit()
                return True
            except sqlite3.IntegrityError:
                conn.rollback()
                return False
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def create_root_account(self, uid: str, phone: str, code: str, now: int) -> None:
        """Seed an account with no inviter (first user of a referral tree)."""
        loop = asyncio.get_running_loop()
        cycle = TaskCycle.fresh(now)

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO accounts (uid, phone, status, task_progress, "
                    "next_cycle_at, next_task_at, last_cycle_start_at, referral_code, "
                    "created_at, updated_at) VALUES (?, ?, 'active', ?, ?, ?, ?, ?, ?, ?)",
                    (
                        uid, phone, cycle.progress_json(), cycle.next_cycle_at,
                        cycle.next_task_at, cycle.last_cycle_start_at, code, now, now,
                    ),
                )
                conn.execute(
                    "INSERT OR IGNORE INTO referrals (uid, inviter_uid, referral_chain, "
                    "created_at, updated_at) VALUES (?, NULL, '{}', ?, ?)",
                    (uid, now, now),
                )
                conn.execute(
                    "INSERT OR IGNORE INTO referral_codes (code, owner_uid, active, used_count, "
                    "created_at) VALUES (?, ?, 1, 0, ?)",
                    (code, uid, now),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Balance Operations
    # ══════════════════════════════════════════════════════════

    async def credit(
        self,
        uid: str,
        amount: int,
        entry_type: str,
        now: int,
        task_type: str | None = None,
        level: str | None = None,
        source_uid: str | None = None,
        reference_id: str | None = None,
        metadata: dict | None = None,
    ) -> int | None:
        """Atomically credit balance/total_earned and append a ledger entry.

        Returns the new balance, or None when the account does not exist or
        the entry would duplicate an already-paid commission level.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET balance = balance + ?, total_earned = total_earned + ?, "
                    "updated_at = ? WHERE uid = ?",
                    (amount, amount, now, uid),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                try:
                    balance = self._insert_ledger(
                        conn, uid, entry_type, amount, now,
                        task_type=task_type, level=level, source_uid=source_uid,
                        reference_id=reference_id, metadata=metadata,
                    )
                except sqlite3.IntegrityError:
                    conn.rollback()
                    return None
                conn.commit()
                return balance
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def credit_signup_bonus(
        self, inviter_uid: str, new_uid: str, amount: int, now: int,
    ) -> int | None:
        """Credit the direct inviter and append new_uid to its children.

        One commit. Returns the inviter's new balance, or None if the inviter
        has no account.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET balance = balance + ?, total_earned = total_earned + ?, "
                    "updated_at = ? WHERE uid = ?",
                    (amount, amount, now, inviter_uid),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                balance = self._insert_ledger(
                    conn, inviter_uid, "invite_bonus_l1", amount, now,
                    level="L1", source_uid=new_uid,
                )
                row = conn.execute(
                    "SELECT children_l1 FROM referrals WHERE uid = ?", (inviter_uid,),
                ).fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO referrals (uid, inviter_uid, referral_chain, children_l1, "
                        "verified_invites_l1, created_at, updated_at) "
                        "VALUES (?, NULL, '{}', ?, 1, ?, ?)",
                        (inviter_uid, dumps([new_uid]), now, now),
                    )
                else:
                    children = loads(row["children_l1"], [])
                    if new_uid not in children:
                        children.append(new_uid)
                        conn.execute(
                            "UPDATE referrals SET children_l1 = ?, "
                            "verified_invites_l1 = verified_invites_l1 + 1, updated_at = ? "
                            "WHERE uid = ?",
                            (dumps(children), now, inviter_uid),
                        )
                conn.commit()
                return balance
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def commit_slot_completion(
        self,
        uid: str,
        expected_cycle_version: int,
        cycle: TaskCycle,
        now: int,
        reward: int,
        entry_type: str,
        task_type: str,
        cycle_date: str,
        reference_id: str | None = None,
        metadata: dict | None = None,
        spin: dict | None = None,
    ) -> int | None:
        """Persist a completed slot as one compare-and-set commit.

        Writes the new cycle state, the reward (when > 0) with its ledger
        entry and its commission job, the task log row and, for spins, the
        immutable spin result. Returns the new balance, or None if another
        claim moved the cycle past ``expected_cycle_version`` or the account
        is no longer active.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET task_progress = ?, next_task_at = ?, next_cycle_at = ?, "
                    "last_cycle_start_at = ?, last_task_at = ?, "
                    "balance = balance + ?, total_earned = total_earned + ?, "
                    "cycle_version = cycle_version + 1, updated_at = ? "
                    "WHERE uid = ? AND cycle_version = ? AND status = 'active'",
                    (
                        cycle.progress_json(), cycle.next_task_at, cycle.next_cycle_at,
                        cycle.last_cycle_start_at, now, reward, reward, now,
                        uid, expected_cycle_version,
                    ),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None

                if reward > 0:
                    balance = self._insert_ledger(
                        conn, uid, entry_type, reward, now,
                        task_type=task_type, reference_id=reference_id, metadata=metadata,
                    )
                    self._insert_commission_job(conn, uid, reward, task_type, now)
                else:
                    balance = conn.execute(
                        "SELECT balance FROM accounts WHERE uid = ?", (uid,),
                    ).fetchone()["balance"]

                conn.execute(
                    "INSERT OR REPLACE INTO task_log (uid, cycle_date, task_type, reward, claimed_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (uid, cycle_date, task_type, reward, now),
                )

                if spin is not None:
                    conn.execute(
                        "INSERT INTO spin_results (spin_id, uid, prize, label, weights, roll, claimed_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            spin["spin_id"], uid, spin["prize"], spin["label"],
                            dumps(spin["weights"]), spin.get("roll"), now,
                        ),
                    )

                conn.commit()
                return balance
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Ledger Queries
    # ══════════════════════════════════════════════════════════

    async def get_ledger_entries(self, uid: str, limit: int = 50) -> list[dict]:
        """Newest-first ledger entries for uid."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM ledger_entries WHERE uid = ? ORDER BY id DESC LIMIT ?",
                    (uid, limit),
                ).fetchall()
                entries = []
                for r in rows:
                    entry = dict(r)
                    entry["metadata"] = loads(entry.get("metadata"), None)
                    entries.append(entry)
                return entries
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_ledger_sum(self, uid: str) -> int:
        """SUM(amount) across uid's ledger; equals balance by construction."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(amount), 0) AS total FROM ledger_entries WHERE uid = ?",
                    (uid,),
                ).fetchone()
                return row["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_spin_results(self, uid: str, limit: int = 20) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM spin_results WHERE uid = ? "
                    "ORDER BY claimed_at DESC, rowid DESC LIMIT ?",
                    (uid, limit),
                ).fetchall()
                results = []
                for r in rows:
                    item = dict(r)
                    item["weights"] = loads(item["weights"], [])
                    results.append(item)
                return results
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_task_log(self, uid: str, cycle_date: str) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM task_log WHERE uid = ? AND cycle_date = ? ORDER BY claimed_at",
                    (uid, cycle_date),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_recent_task_log(self, uid: str, limit: int = 20) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM task_log WHERE uid = ? ORDER BY claimed_at DESC LIMIT ?",
                    (uid, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Referrals
    # ══════════════════════════════════════════════════════════

    async def get_referral(self, uid: str) -> dict | None:
        """Referral record with chain and children decoded, or None."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM referrals WHERE uid = ?", (uid,),
                ).fetchone()
                if row is None:
                    return None
                record = dict(row)
                record["referral_chain"] = loads(record["referral_chain"], {})
                record["children_l1"] = loads(record["children_l1"], [])
                return record
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_referral_code(self, code: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM referral_codes WHERE code = ?", (code,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Device Bindings & Bans
    # ══════════════════════════════════════════════════════════

    async def get_device_binding(self, device_key: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM device_bindings WHERE device_key = ?", (device_key,),
                ).fetchone()
                if row is None:
                    return None
                binding = dict(row)
                binding["fingerprint"] = loads(binding["fingerprint"], {})
                return binding
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def bind_device(
        self,
        device_key: str,
        uid: str,
        client_ip: str,
        app_version: int | None,
        fingerprint: dict,
        now: int,
    ) -> bool:
        """Create the binding, or refresh it if already bound to ``uid``.

        Returns False (nothing written) when the key is bound to another uid.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT INTO device_bindings (device_key, bound_uid, last_seen, last_ip, "
                    "app_version, fingerprint, risk_score, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, 0, ?) "
                    "ON CONFLICT(device_key) DO UPDATE SET "
                    "last_seen = excluded.last_seen, last_ip = excluded.last_ip, "
                    "app_version = excluded.app_version, fingerprint = excluded.fingerprint "
                    "WHERE device_bindings.bound_uid = excluded.bound_uid",
                    (device_key, uid, now, client_ip, app_version, dumps(fingerprint), now),
                )
                bound = cursor.rowcount > 0
                conn.commit()
                return bound
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def ban_account(
        self,
        uid: str,
        reason: str,
        evidence: dict,
        banned_by: str,
        now: int,
    ) -> bool:
        """Flip the account to banned and upsert its Ban record in one commit.

        A previous unban on the same record is cleared. Returns True if an
        account row was flipped.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET status = 'banned', ban_reason = ?, banned_at = ?, "
                    "updated_at = ? WHERE uid = ?",
                    (reason, now, now, uid),
                )
                flipped = cursor.rowcount > 0
                conn.execute(
                    "INSERT INTO bans (uid, reason, evidence, banned_at, banned_by) "
                    "VALUES (?, ?, ?, ?, ?) "
                    "ON CONFLICT(uid) DO UPDATE SET reason = excluded.reason, "
                    "evidence = excluded.evidence, banned_at = excluded.banned_at, "
                    "banned_by = excluded.banned_by, unbanned_at = NULL, unbanned_by = NULL",
                    (uid, reason, dumps(evidence), now, banned_by),
                )
                if banned_by != "system":
                    self._insert_admin_action(
                        conn, banned_by, "ban_user", now,
                        target_uid=uid, details={"reason": reason},
                    )
                conn.commit()
                return flipped
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def unban_account(self, uid: str, admin_uid: str, now: int) -> bool:
        """Restore a banned account to active, stamping the Ban record.

        Returns False if the account is missing or not banned.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET status = 'active', unbanned_at = ?, unbanned_by = ?, "
                    "updated_at = ? WHERE uid = ? AND status = 'banned'",
                    (now, admin_uid, now, uid),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return False
                conn.execute(
                    "UPDATE bans SET unbanned_at = ?, unbanned_by = ? WHERE uid = ?",
                    (now, admin_uid, uid),
                )
                self._insert_admin_action(conn, admin_uid, "unban_user", now, target_uid=uid)
                conn.commit()
                return True
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_ban(self, uid: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT * FROM bans WHERE uid = ?", (uid,)).fetchone()
                if row is None:
                    return None
                ban = dict(row)
                ban["evidence"] = loads(ban["evidence"], {})
                return ban
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_bans(self, limit: int = 50) -> list[dict]:
        """Newest-first ban records (fraud log)."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM bans ORDER BY banned_at DESC LIMIT ?", (limit,),
                ).fetchall()
                bans = []
                for r in rows:
                    ban = dict(r)
                    ban["evidence"] = loads(ban["evidence"], {})
                    bans.append(ban)
                return bans
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Withdrawals
    # ══════════════════════════════════════════════════════════

    async def create_withdrawal(self, withdrawal: dict, now: int) -> str:
        """Debit the account and record a pending withdrawal in one commit.

        Returns "ok", "insufficient" (balance moved or account inactive) or
        "pending_exists".
        """
        loop = asyncio.get_running_loop()

        def _sync() -> str:
            conn = self._get_connection()
            try:
                uid = withdrawal["uid"]
                amount = withdrawal["amount"]
                cursor = conn.execute(
                    "UPDATE accounts SET balance = balance - ?, "
                    "updated_at = ? WHERE uid = ? AND status = 'active' AND balance >= ?",
                    (amount, now, uid, amount),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return "insufficient"
                try:
                    conn.execute(
                        "INSERT INTO withdrawals (withdrawal_id, uid, method, amount, fee, "
                        "net_amount, account_number, account_name, status, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)",
                        (
                            withdrawal["withdrawal_id"], uid, withdrawal["method"], amount,
                            withdrawal["fee"], withdrawal["net_amount"],
                            withdrawal["account_number"], withdrawal["account_name"], now, now,
                        ),
                    )
                except sqlite3.IntegrityError:
                    conn.rollback()
                    return "pending_exists"
                self._insert_ledger(
                    conn, uid, "withdrawal", -amount, now,
                    reference_id=withdrawal["withdrawal_id"],
                    metadata={"method": withdrawal["method"]},
                )
                conn.commit()
                return "ok"
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def resolve_withdrawal(
        self,
        withdrawal_id: str,
        approve: bool,
        admin_uid: str,
        now: int,
        reason: str | None = None,
    ) -> dict | None:
        """Move a pending withdrawal to approved/rejected in one commit.

        Rejection refunds the original ``amount`` with a withdrawal_refund
        ledger entry. Returns the updated row, or None if it was not pending.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                if approve:
                    cursor = conn.execute(
                        "UPDATE withdrawals SET status = 'approved', approved_by = ?, "
                        "approved_at = ?, updated_at = ? "
                        "WHERE withdrawal_id = ? AND status = 'pending'",
                        (admin_uid, now, now, withdrawal_id),
                    )
                else:
                    cursor = conn.execute(
                        "UPDATE withdrawals SET status = 'rejected', rejected_by = ?, "
                        "rejected_at = ?, rejection_reason = ?, updated_at = ? "
                        "WHERE withdrawal_id = ? AND status = 'pending'",
                        (admin_uid, now, reason, now, withdrawal_id),
                    )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None

                row = dict(conn.execute(
                    "SELECT * FROM withdrawals WHERE withdrawal_id = ?", (withdrawal_id,),
                ).fetchone())

                if not approve:
                    conn.execute(
                        "UPDATE accounts SET balance = balance + ?, "
                        "updated_at = ? WHERE uid = ?",
                        (row["amount"], now, row["uid"]),
                    )
                    self._insert_ledger(
                        conn, row["uid"], "withdrawal_refund", row["amount"], now,
                        reference_id=withdrawal_id, metadata={"reason": reason},
                    )

                details: dict[str, Any] = {"method": row["method"], "amount": row["amount"]}
                if not approve:
                    details["reason"] = reason
                self._insert_admin_action(
                    conn, admin_uid,
                    "approve_withdrawal" if approve else "reject_withdrawal",
                    now, target_uid=row["uid"], target_id=withdrawal_id, details=details,
                )
                conn.commit()
                return row
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_withdrawal(self, withdrawal_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM withdrawals WHERE withdrawal_id = ?", (withdrawal_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_pending_withdrawal_for(self, uid: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM withdrawals WHERE uid = ? AND status = 'pending' LIMIT 1",
                    (uid,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_withdrawals(
        self,
        uid: str | None = None,
        status: str | None = None,
        limit: int = 50,
        oldest_first: bool = False,
    ) -> list[dict]:
        """Filtered withdrawal listing, newest first unless ``oldest_first``."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                clauses: list[str] = []
                params: list[Any] = []
                if uid is not None:
                    clauses.append("uid = ?")
                    params.append(uid)
                if status is not None:
                    clauses.append("status = ?")
                    params.append(status)
                where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
                order = "ASC" if oldest_first else "DESC"
                rows = conn.execute(
                    f"SELECT * FROM withdrawals {where} ORDER BY created_at {order} LIMIT ?",
                    (*params, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Admin
    # ══════════════════════════════════════════════════════════

    async def set_admin(self, uid: str, role: str) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "INSERT INTO admins (uid, role) VALUES (?, ?) "
                    "ON CONFLICT(uid) DO UPDATE SET role = excluded.role",
                    (uid, role),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def get_admin_role(self, uid: str) -> str | None:
        loop = asyncio.get_running_loop()

        def _sync() -> str | None:
            conn = self._get_connection()
            try:
                row = conn.execute("SELECT role FROM admins WHERE uid = ?", (uid,)).fetchone()
                return row["role"] if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_admin_actions(self, limit: int = 50) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM admin_actions ORDER BY id DESC LIMIT ?", (limit,),
                ).fetchall()
                actions = []
                for r in rows:
                    action = dict(r)
                    action["details"] = loads(action["details"], {})
                    actions.append(action)
                return actions
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_dashboard_counts(self, day_start: int) -> dict[str, int]:
        """Aggregate counts for the admin dashboard since ``day_start`` (ms)."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict[str, int]:
            conn = self._get_connection()
            try:
                def scalar(sql: str, params: tuple = ()) -> int:
                    return conn.execute(sql, params).fetchone()[0]

                return {
                    "total_users": scalar("SELECT COUNT(*) FROM accounts"),
                    "active_bans": scalar("SELECT COUNT(*) FROM bans WHERE unbanned_at IS NULL"),
                    "today_new_users": scalar(
                        "SELECT COUNT(*) FROM accounts WHERE created_at >= ?", (day_start,),
                    ),
                    "today_bans": scalar(
                        "SELECT COUNT(*) FROM bans WHERE banned_at >= ?", (day_start,),
                    ),
                    "today_task_claims": scalar(
                        "SELECT COUNT(*) FROM task_log WHERE claimed_at >= ?", (day_start,),
                    ),
                }
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Commission Queue
    # ══════════════════════════════════════════════════════════

    async def enqueue_commission(
        self, source_uid: str, reward_amount: int, task_type: str | None, now: int,
    ) -> str:
        """Insert a pending cascade job and return its id."""
        loop = asyncio.get_running_loop()

        def _sync() -> str:
            conn = self._get_connection()
            try:
                job_id = self._insert_commission_job(
                    conn, source_uid, reward_amount, task_type, now,
                )
                conn.commit()
                return job_id
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_due_commission_jobs(self, now: int, limit: int) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM commission_jobs WHERE status = 'pending' AND available_at <= ? "
                    "ORDER BY available_at, created_at LIMIT ?",
                    (now, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_commission_job(self, job_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM commission_jobs WHERE job_id = ?", (job_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def mark_commission_done(self, job_id: str, now: int) -> None:
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE commission_jobs SET status = 'done', attempts = attempts + 1, "
                    "last_error = NULL, updated_at = ? WHERE job_id = ?",
                    (now, job_id),
                )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def mark_commission_failed(
        self, job_id: str, error: str, retry_at: int | None, now: int,
    ) -> None:
        """Record a failed attempt; ``retry_at=None`` dead-letters the job."""
        loop = asyncio.get_running_loop()

        def _sync() -> None:
            conn = self._get_connection()
            try:
                if retry_at is None:
                    conn.execute(
                        "UPDATE commission_jobs SET status = 'dead', attempts = attempts + 1, "
                        "last_error = ?, updated_at = ? WHERE job_id = ?",
                        (error, now, job_id),
                    )
                else:
                    conn.execute(
                        "UPDATE commission_jobs SET attempts = attempts + 1, last_error = ?, "
                        "available_at = ?, updated_at = ? WHERE job_id = ?",
                        (error, retry_at, now, job_id),
                    )
                conn.commit()
            finally:
                conn.close()

        await loop.run_in_executor(None, _sync)

    async def count_commission_jobs(self) -> dict[str, int]:
        loop = asyncio.get_running_loop()

        def _sync() -> dict[str, int]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT status, COUNT(*) AS cnt FROM commission_jobs GROUP BY status",
                ).fetchall()
                return {r["status"]: r["cnt"] for r in rows}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Population Queries
    # ══════════════════════════════════════════════════════════

    async def get_total_circulation(self) -> int:
        """SUM(balance) across all accounts."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(balance), 0) AS total FROM accounts",
                ).fetchone()
                return row["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_account_count(self, status: str | None = None) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                if status is None:
                    row = conn.execute("SELECT COUNT(*) AS cnt FROM accounts").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) AS cnt FROM accounts WHERE status = ?", (status,),
                    ).fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def search_accounts(self, field: str, query: str, limit: int = 20) -> list[dict]:
        """Exact-match account lookup by uid, phone or referral_code."""
        if field not in ("uid", "phone", "referral_code"):
            raise ValueError(f"Unsupported search field: {field}")
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    f"SELECT * FROM accounts WHERE {field} = ? ORDER BY created_at DESC LIMIT ?",
                    (query, limit),
                ).fetchall()
                return [self._account_from_row(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
