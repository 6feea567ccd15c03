"""Task claim engine.

Validates a claim against the account's cycle state and commits the reward,
its commission job and the new state in one cycle-version-guarded write. A commit that loses a race
re-reads the account and re-validates, so the loser sees the winner's state
("already completed" or the cooldown) instead of a second reward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .outcomes import ACCOUNT_NOT_ACTIVE, USER_NOT_FOUND, Failure, conflict, require_failure, validation
from .task_state import GateBlock, TaskCycle, TaskSlot
from .utils import now_ms, today_str

if TYPE_CHECKING:
    from .config import TasksConfig
    from .database import LedgerStore


# ═══════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ClaimOutcome:
    """Result of a task claim."""

    success: bool
    reward: int = 0
    next_task_at: int | None = None
    next_cycle_at: int | None = None
    failure: Failure | None = None

    def __post_init__(self) -> None:
        require_failure(self.success, self.failure)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "reward": self.reward, "nextTaskAt": self.next_task_at}
        result = self.failure.to_dict()
        if self.next_task_at is not None:
            result["nextTaskAt"] = self.next_task_at
        if self.next_cycle_at is not None:
            result["nextCycleAt"] = self.next_cycle_at
        return result


CONCURRENT_UPDATE = conflict("concurrent_update", "Account is busy, please retry")


def gate_failure(
    block: GateBlock, cycle: TaskCycle, completed_message: str,
) -> ClaimOutcome:
    """Translate a gate block into the claim-shaped failure."""
    if block is GateBlock.CYCLE_NOT_READY:
        return ClaimOutcome(
            success=False,
            next_task_at=cycle.next_cycle_at,
            next_cycle_at=cycle.next_cycle_at,
            failure=conflict(block.value, "Task cycle not ready yet"),
        )
    if block is GateBlock.COOLDOWN_ACTIVE:
        return ClaimOutcome(
            success=False,
            next_task_at=cycle.next_task_at,
            failure=conflict(block.value, "Task cooldown active"),
        )
    if block is GateBlock.ALREADY_COMPLETED:
        return ClaimOutcome(success=False, failure=conflict(block.value, completed_message))
    return ClaimOutcome(success=False, failure=conflict(block.value, "Task is locked"))


def account_failure(account: dict | None) -> ClaimOutcome | None:
    if account is None:
        return ClaimOutcome(success=False, failure=USER_NOT_FOUND)
    if account["status"] != "active":
        return ClaimOutcome(success=False, failure=ACCOUNT_NOT_ACTIVE)
    return None


# ═══════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════


class TaskEngine:
    """Claims for the fixed-reward slots (task_1..task_3)."""

    def __init__(
        self,
        config: TasksConfig,
        database: LedgerStore,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._logger = logger

        self.claims_committed = 0
        self.claims_rejected = 0

    @property
    def cooldown_ms(self) -> int:
        return self._config.cooldown_seconds * 1000

    @property
    def cycle_ms(self) -> int:
        return self._config.cycle_hours * 3600 * 1000

    def reward_for(self, slot: TaskSlot) -> int:
        return self._config.rewards.get(slot.value, 0)

    # ══════════════════════════════════════════════════════════
    #  Validation
    # ══════════════════════════════════════════════════════════

    async def _validate_claim(
        self, account: dict | None, task_type: str, now: int,
    ) -> tuple[ClaimOutcome | None, TaskSlot | None, TaskCycle | None]:
        """Run the claim rules in order against an account snapshot."""
        failed = account_failure(account)
        if failed is not None:
            return failed, None, None

        slot = TaskSlot.parse(task_type)
        if slot is None:
            return (
                ClaimOutcome(
                    success=False,
                    failure=validation("invalid_task_type", f"Unknown task type: {task_type}"),
                ),
                None, None,
            )

        cycle = TaskCycle.from_account(account)
        block = cycle.gate(slot, now)
        if block is not None:
            return gate_failure(block, cycle, "Task already completed in this cycle"), slot, cycle

        if slot is TaskSlot.TASK_3:
            referral = await self._db.get_referral(account["uid"])
            verified = referral["verified_invites_l1"] if referral else 0
            target = self._config.invite_challenge_target
            if verified < target:
                return (
                    ClaimOutcome(
                        success=False,
                        failure=conflict(
                            "invite_target_not_met",
                            f"Need {target} verified invites. Current: {verified}",
                        ),
                    ),
                    slot, cycle,
                )

        if slot is TaskSlot.TASK_4:
            return (
                ClaimOutcome(
                    success=False,
                    failure=validation("use_spin_endpoint", "Use spin endpoint for Task 4"),
                ),
                slot, cycle,
            )

        return None, slot, cycle

    # ══════════════════════════════════════════════════════════
    #  Claim
    # ══════════════════════════════════════════════════════════

    async def claim(self, uid: str, task_type: str, now: int | None = None) -> ClaimOutcome:
        """Validate and commit one slot claim."""
        now = now if now is not None else now_ms()

        for _ in range(self._config.max_commit_retries + 1):
            account = await self._db.get_account(uid)
            failed, slot, cycle = await self._validate_claim(account, task_type, now)
            if failed is not None:
                self.claims_rejected += 1
                return failed

            reward = self.reward_for(slot)
            nxt = cycle.complete(slot, now, self.cooldown_ms, self.cycle_ms)
            balance = await self._db.commit_slot_completion(
                uid,
                expected_cycle_version=account["cycle_version"],
                cycle=nxt,
                now=now,
                reward=reward,
                entry_type="task_reward",
                task_type=slot.value,
                cycle_date=today_str(now),
            )
            if balance is None:
                self._logger.debug("Claim %s/%s lost a concurrent update, retrying", uid, slot.value)
                continue

            self.claims_committed += 1
            self._logger.info(
                "Task %s claimed by %s: +%d (balance %d)", slot.value, uid, reward, balance,
            )
            if nxt.next_cycle_at != cycle.next_cycle_at:
                self._logger.info("Cycle complete for %s, next opens at %d", uid, nxt.next_cycle_at)

            return ClaimOutcome(success=True, reward=reward, next_task_at=nxt.next_task_at)

        self._logger.warning("Claim %s/%s gave up after repeated conflicts", uid, task_type)
        return ClaimOutcome(success=False, failure=CONCURRENT_UPDATE)

    # ══════════════════════════════════════════════════════════
    #  Status
    # ══════════════════════════════════════════════════════════

    async def get_status(self, uid: str, now: int | None = None) -> dict[str, Any] | None:
        """Cycle/cooldown readiness and slot progress, or None for unknown uid."""
        now = now if now is not None else now_ms()
        account = await self._db.get_account(uid)
        if account is None:
            return None
        cycle = TaskCycle.from_account(account)
        return {
            "cycleReady": cycle.cycle_ready(now),
            "cooldownReady": cycle.cooldown_ready(now),
            "taskProgress": cycle.as_dict(),
            "nextCycleAt": cycle.next_cycle_at,
            "nextTaskAt": cycle.next_task_at,
        }
