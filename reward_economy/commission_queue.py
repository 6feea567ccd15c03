"""Durable commission outbox.

Reward commits write a job in the same transaction as the reward itself; a
background loop delivers it to the referral cascade. Delivery is at-least-once: a failed job is retried with linear
backoff and dead-lettered after ``max_attempts``. Per-level idempotency in
the ledger means a redelivered job never pays a level twice.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .utils import now_ms

if TYPE_CHECKING:
    from .config import CommissionQueueConfig
    from .database import LedgerStore
    from .referral_engine import ReferralEngine


class CommissionQueue:
    """Outbox of pending commission cascades and the worker that drains it."""

    def __init__(
        self,
        config: CommissionQueueConfig,
        database: LedgerStore,
        referrals: ReferralEngine,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._referrals = referrals
        self._logger = logger
        self._task: asyncio.Task | None = None

        self.jobs_done = 0
        self.jobs_failed = 0
        self.jobs_dead = 0

    async def enqueue(
        self,
        source_uid: str,
        reward_amount: int,
        task_type: str | None,
        now: int | None = None,
    ) -> str:
        now = now if now is not None else now_ms()
        job_id = await self._db.enqueue_commission(source_uid, reward_amount, task_type, now)
        self._logger.debug("Queued commission job %s (%s, %d)", job_id, source_uid, reward_amount)
        return job_id

    # ══════════════════════════════════════════════════════════
    #  Delivery
    # ══════════════════════════════════════════════════════════

    async def drain(self, now: int | None = None) -> int:
        """Process every job due at ``now`` once. Returns the number handled."""
        now = now if now is not None else now_ms()
        handled = 0
        while True:
            jobs = await self._db.get_due_commission_jobs(now, self._config.batch_size)
            if not jobs:
                return handled
            for job in jobs:
                await self._deliver(job, now)
                handled += 1

    async def _deliver(self, job: dict, now: int) -> None:
        job_id = job["job_id"]
        try:
            await self._referrals.cascade_commission(
                job["source_uid"], job["reward_amount"], job["task_type"], job_id, now=now,
            )
        except Exception as e:
            attempts = job["attempts"] + 1
            if attempts >= self._config.max_attempts:
                await self._db.mark_commission_failed(job_id, str(e), None, now)
                self.jobs_dead += 1
                self._logger.error(
                    "Commission job %s dead after %d attempts (%s, %d): %s",
                    job_id, attempts, job["source_uid"], job["reward_amount"], e,
                )
            else:
                retry_at = now + self._config.backoff_seconds * 1000 * attempts
                await self._db.mark_commission_failed(job_id, str(e), retry_at, now)
                self.jobs_failed += 1
                self._logger.warning(
                    "Commission job %s failed (attempt %d), retry at %d: %s",
                    job_id, attempts, retry_at, e,
                )
            return

        await self._db.mark_commission_done(job_id, now)
        self.jobs_done += 1

    # ══════════════════════════════════════════════════════════
    #  Worker loop
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        self._task = asyncio.create_task(self._worker_loop())
        self._logger.info(
            "Commission worker started (poll: %.1fs)", self._config.poll_interval_seconds,
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _worker_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.poll_interval_seconds)
            try:
                await self.drain()
            except Exception:
                self._logger.exception("Commission drain failed")
