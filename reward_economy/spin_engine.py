"""Spin wheel (task_4): weighted prize draw decided entirely server-side."""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .outcomes import Failure, require_failure
from .task_engine import CONCURRENT_UPDATE, account_failure, gate_failure
from .task_state import TaskCycle, TaskSlot
from .utils import now_ms, today_str

if TYPE_CHECKING:
    from .config import SpinConfig, TasksConfig
    from .database import LedgerStore


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PrizeEntry:
    prize: int
    label: str
    weight: int


@dataclass(frozen=True)
class SpinOutcome:
    """Result of a spin attempt."""

    success: bool
    prize: int = 0
    label: str = ""
    spin_id: str | None = None
    next_task_at: int | None = None
    next_cycle_at: int | None = None
    failure: Failure | None = None

    def __post_init__(self) -> None:
        require_failure(self.success, self.failure)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "prize": self.prize,
                "label": self.label,
                "spinId": self.spin_id,
            }
        result = self.failure.to_dict()
        if self.next_task_at is not None:
            result["nextTaskAt"] = self.next_task_at
        if self.next_cycle_at is not None:
            result["nextCycleAt"] = self.next_cycle_at
        return result


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class SpinEngine:
    """Resolves and commits the daily spin."""

    def __init__(
        self,
        tasks_config: TasksConfig,
        spin_config: SpinConfig,
        database: LedgerStore,
        logger: logging.Logger,
    ) -> None:
        self._tasks = tasks_config
        self._db = database
        self._logger = logger

        self._prize_table = self._build_prize_table(spin_config)

        self.spins_committed = 0
        self.prizes_paid = 0

    # ══════════════════════════════════════════════════════════
    #  Prize table
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _build_prize_table(spin_config: SpinConfig) -> list[PrizeEntry]:
        return [PrizeEntry(p.prize, p.label, p.weight) for p in spin_config.prizes]

    @property
    def prize_table(self) -> list[PrizeEntry]:
        return list(self._prize_table)

    @property
    def total_weight(self) -> int:
        return sum(entry.weight for entry in self._prize_table)

    def resolve(self, roll: float) -> PrizeEntry:
        """Map a roll in [0, total_weight) to a prize.

        Walks the table in declaration order subtracting each weight; the
        first entry that brings the remainder to zero or below wins.
        """
        remaining = roll
        for entry in self._prize_table:
            remaining -= entry.weight
            if remaining <= 0:
                return entry
        return self._prize_table[-1]

    def draw(self) -> tuple[PrizeEntry, float]:
        roll = random.random() * self.total_weight
        return self.resolve(roll), roll

    # ══════════════════════════════════════════════════════════
    #  Spin
    # ══════════════════════════════════════════════════════════

    async def spin(self, uid: str, now: int | None = None) -> SpinOutcome:
        """Validate task_4, draw a prize and commit it with the slot."""
        now = now if now is not None else now_ms()
        cooldown_ms = self._tasks.cooldown_seconds * 1000
        cycle_ms = self._tasks.cycle_hours * 3600 * 1000

        for _ in range(self._tasks.max_commit_retries + 1):
            account = await self._db.get_account(uid)
            failed = account_failure(account)
            if failed is not None:
                return SpinOutcome(success=False, failure=failed.failure)

            cycle = TaskCycle.from_account(account)
            block = cycle.gate(TaskSlot.TASK_4, now)
            if block is not None:
                rejected = gate_failure(block, cycle, "Spin already completed in this cycle")
                return SpinOutcome(
                    success=False,
                    next_task_at=rejected.next_task_at,
                    next_cycle_at=rejected.next_cycle_at,
                    failure=rejected.failure,
                )

            entry, roll = self.draw()
            spin_id = uuid.uuid4().hex
            nxt = cycle.complete(TaskSlot.TASK_4, now, cooldown_ms, cycle_ms)
            balance = await self._db.commit_slot_completion(
                uid,
                expected_cycle_version=account["cycle_version"],
                cycle=nxt,
                now=now,
                reward=entry.prize,
                entry_type="spin_reward",
                task_type=TaskSlot.TASK_4.value,
                cycle_date=today_str(now),
                reference_id=spin_id,
                metadata={"label": entry.label},
                spin={
                    "spin_id": spin_id,
                    "prize": entry.prize,
                    "label": entry.label,
                    "weights": [{"label": e.label, "weight": e.weight} for e in self._prize_table],
                    "roll": roll,
                },
            )
            if balance is None:
                self._logger.debug("Spin for %s lost a concurrent update, retrying", uid)
                continue

            self.spins_committed += 1
            self.prizes_paid += entry.prize
            self._logger.info(
                "Spin %s for %s: %s (+%d, balance %d)", spin_id, uid, entry.label, entry.prize, balance,
            )

            return SpinOutcome(
                success=True,
                prize=entry.prize,
                label=entry.label,
                spin_id=spin_id,
                next_task_at=nxt.next_task_at,
            )

        self._logger.warning("Spin for %s gave up after repeated conflicts", uid)
        return SpinOutcome(success=False, failure=CONCURRENT_UPDATE)

    async def history(self, uid: str, limit: int = 20) -> list[dict[str, Any]]:
        """Newest-first spin results."""
        rows = await self._db.get_spin_results(uid, limit)
        return [
            {
                "spinId": r["spin_id"],
                "prize": r["prize"],
                "label": r["label"],
                "weights": r["weights"],
                "claimedAt": r["claimed_at"],
            }
            for r in rows
        ]
