"""Task cycle state machine.

An account's daily task state is four slots plus two clocks:

* ``next_cycle_at``: the 24h gate; no slot may be claimed before it.
* ``next_task_at``: the inter-task cooldown shared by all slots.

Transitions are pure: ``complete()`` returns a new ``TaskCycle`` and raises
``IllegalTransition`` for anything the gate would reject, so a caller cannot
persist a state the rules forbid.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .utils import dumps, loads


class TaskSlot(str, Enum):
    TASK_1 = "task_1"  # Watch ad
    TASK_2 = "task_2"  # Watch ad (second)
    TASK_3 = "task_3"  # Invite challenge
    TASK_4 = "task_4"  # Spin wheel

    @classmethod
    def parse(cls, value: str | None) -> TaskSlot | None:
        try:
            return cls(value)
        except ValueError:
            return None


class SlotState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    LOCKED = "locked"


class GateBlock(Enum):
    """Why a slot cannot be claimed right now, in evaluation order."""

    CYCLE_NOT_READY = "task_cycle_not_ready"
    COOLDOWN_ACTIVE = "task_cooldown_active"
    ALREADY_COMPLETED = "task_already_completed"
    LOCKED = "task_locked"


class IllegalTransition(Exception):
    def __init__(self, slot: TaskSlot, block: GateBlock) -> None:
        super().__init__(f"Cannot complete {slot.value}: {block.value}")
        self.slot = slot
        self.block = block


@dataclass(frozen=True)
class TaskCycle:
    """Immutable snapshot of one account's cycle state."""

    progress: tuple[tuple[TaskSlot, SlotState], ...]
    next_cycle_at: int
    next_task_at: int
    last_cycle_start_at: int | None = None

    # ══════════════════════════════════════════════════════════
    #  Construction
    # ══════════════════════════════════════════════════════════

    @classmethod
    def fresh(cls, now: int) -> TaskCycle:
        """First cycle opens immediately, all slots pending."""
        return cls(
            progress=tuple((slot, SlotState.PENDING) for slot in TaskSlot),
            next_cycle_at=now,
            next_task_at=0,
            last_cycle_start_at=now,
        )

    @classmethod
    def from_account(cls, account: Mapping[str, Any]) -> TaskCycle:
        raw = account.get("task_progress")
        if isinstance(raw, str):
            raw = loads(raw, {})
        raw = raw or {}
        progress = []
        for slot in TaskSlot:
            try:
                state = SlotState(raw.get(slot.value, SlotState.PENDING.value))
            except ValueError:
                state = SlotState.PENDING
            progress.append((slot, state))
        return cls(
            progress=tuple(progress),
            next_cycle_at=int(account.get("next_cycle_at") or 0),
            next_task_at=int(account.get("next_task_at") or 0),
            last_cycle_start_at=account.get("last_cycle_start_at"),
        )

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    def state_of(self, slot: TaskSlot) -> SlotState:
        for s, state in self.progress:
            if s is slot:
                return state
        return SlotState.PENDING

    def as_dict(self) -> dict[str, str]:
        return {slot.value: state.value for slot, state in self.progress}

    def progress_json(self) -> str:
        return dumps(self.as_dict())

    @property
    def all_completed(self) -> bool:
        return all(state is SlotState.COMPLETED for _, state in self.progress)

    def cycle_ready(self, now: int) -> bool:
        return now >= self.next_cycle_at

    def cooldown_ready(self, now: int) -> bool:
        return now >= self.next_task_at

    def gate(self, slot: TaskSlot, now: int) -> GateBlock | None:
        """First rule blocking ``slot`` at ``now``, or None if claimable."""
        if not self.cycle_ready(now):
            return GateBlock.CYCLE_NOT_READY
        if not self.cooldown_ready(now):
            return GateBlock.COOLDOWN_ACTIVE
        state = self.state_of(slot)
        if state is SlotState.COMPLETED:
            return GateBlock.ALREADY_COMPLETED
        if state is SlotState.LOCKED:
            return GateBlock.LOCKED
        return None

    # ══════════════════════════════════════════════════════════
    #  Transitions
    # ══════════════════════════════════════════════════════════

    def complete(
        self, slot: TaskSlot, now: int, cooldown_ms: int, cycle_ms: int,
    ) -> TaskCycle:
        """pending → completed, advancing the cooldown.

        When this completes the last pending slot the cycle rolls over in the
        same transition: every slot back to pending and the cycle gate pushed
        ``cycle_ms`` into the future.
        """
        block = self.gate(slot, now)
        if block is not None:
            raise IllegalTransition(slot, block)

        progress = tuple(
            (s, SlotState.COMPLETED if s is slot else state)
            for s, state in self.progress
        )
        nxt = TaskCycle(
            progress=progress,
            next_cycle_at=self.next_cycle_at,
            next_task_at=now + cooldown_ms,
            last_cycle_start_at=self.last_cycle_start_at,
        )
        if nxt.all_completed:
            return nxt.rollover(now, cycle_ms)
        return nxt

    def rollover(self, now: int, cycle_ms: int) -> TaskCycle:
        return TaskCycle(
            progress=tuple((slot, SlotState.PENDING) for slot in TaskSlot),
            next_cycle_at=now + cycle_ms,
            next_task_at=self.next_task_at,
            last_cycle_start_at=now,
        )
