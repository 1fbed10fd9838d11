"""
Per-user undo stack.

Reversible mutations push a snapshot of the state they replaced. The stack is
capped at ``max_depth`` entries per user (oldest dropped) and entries expire
after ``ttl`` seconds. Undo is at-most-once: a popped entry whose compensating
write fails is not put back.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from loguru import logger

from chatledger.engine.sweeper import PeriodicSweeper
from chatledger.models.schemas import UndoKind


class CompensationTarget(Protocol):
    def delete_record(self, table: str, record_id: int) -> None: ...

    def restore_record(self, table: str, snapshot: dict[str, Any]) -> None: ...

    def overwrite_record(self, table: str, record_id: int, snapshot: dict[str, Any]) -> None: ...


@dataclass
class UndoRecord:
    user_id: str
    action_kind: UndoKind
    prior_state: dict[str, Any]
    timestamp: float


class UndoStatus(str, Enum):
    UNDONE = "undone"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass
class UndoOutcome:
    status: UndoStatus
    record: UndoRecord | None = None
    error: str | None = None


# action kind -> (table, compensating operation)
COMPENSATIONS: dict[UndoKind, tuple[str, str]] = {
    UndoKind.ADD_TRANSACTION: ("entries", "delete"),
    UndoKind.EDIT_TRANSACTION: ("entries", "overwrite"),
    UndoKind.CHANGE_CATEGORY: ("entries", "overwrite"),
    UndoKind.DELETE_TRANSACTION: ("entries", "restore"),
    UndoKind.ADD_RECURRING: ("recurring", "delete"),
    UndoKind.DELETE_RECURRING: ("recurring", "restore"),
    UndoKind.ADD_CATEGORY: ("categories", "delete"),
    UndoKind.REMOVE_CATEGORY: ("categories", "restore"),
    UndoKind.SET_BUDGET: ("budgets", "budget"),
    UndoKind.DELETE_BUDGET: ("budgets", "restore"),
}


@dataclass
class UndoStack:
    target: CompensationTarget
    max_depth: int = 3
    ttl: float = 300.0
    clock: Callable[[], float] = time.monotonic
    sweep_interval: float = 60.0
    _stacks: dict[str, list[UndoRecord]] = field(default_factory=dict)

    def __post_init__(self):
        self.sweeper = PeriodicSweeper("undo", self.sweep_interval, self.sweep)

    def record(self, user_id: str, action_kind: UndoKind, prior_state: dict[str, Any]) -> UndoRecord:
        entry = UndoRecord(user_id, action_kind, dict(prior_state), self.clock())
        stack = self._stacks.setdefault(user_id, [])
        stack.insert(0, entry)
        del stack[self.max_depth:]
        logger.info("Undo state stored for {}: {} (stack size {})", user_id, action_kind.value, len(stack))
        return entry

    def size(self, user_id: str) -> int:
        return len(self._stacks.get(user_id, []))

    def clear(self, user_id: str) -> None:
        self._stacks.pop(user_id, None)
        logger.info("Undo stack cleared for {}", user_id)

    def peek(self, user_id: str) -> UndoRecord | None:
        stack = self._stacks.get(user_id)
        return stack[0] if stack else None

    def _expired(self, entry: UndoRecord, now: float) -> bool:
        return now - entry.timestamp > self.ttl

    def _pop_live(self, user_id: str) -> UndoRecord | None:
        stack = self._stacks.get(user_id)
        if not stack:
            return None
        now = self.clock()
        while stack:
            entry = stack.pop(0)
            if not self._expired(entry, now):
                break
            entry = None
        if not stack:
            self._stacks.pop(user_id, None)
        return entry

    async def undo_last(self, user_id: str) -> UndoOutcome:
        entry = self._pop_live(user_id)
        if entry is None:
            return UndoOutcome(UndoStatus.EMPTY)

        try:
            self._compensate(entry)
        except Exception as e:
            logger.error("Undo of {} failed for {}: {}", entry.action_kind.value, user_id, e)
            return UndoOutcome(UndoStatus.FAILED, entry, str(e))

        logger.info("Undid {} for {}", entry.action_kind.value, user_id)
        return UndoOutcome(UndoStatus.UNDONE, entry)

    def _compensate(self, entry: UndoRecord) -> None:
        table, operation = COMPENSATIONS[entry.action_kind]
        state = entry.prior_state

        if operation == "delete":
            self.target.delete_record(table, state["id"])
        elif operation == "restore":
            self.target.restore_record(table, state)
        elif operation == "overwrite":
            self.target.overwrite_record(table, state["id"], state)
        elif operation == "budget":
            previous = state.get("previous")
            if previous:
                self.target.overwrite_record(table, state["id"], previous)
            else:
                self.target.delete_record(table, state["id"])

    def sweep(self) -> int:
        now = self.clock()
        removed = 0
        for user_id in list(self._stacks):
            stack = self._stacks[user_id]
            live = [entry for entry in stack if not self._expired(entry, now)]
            removed += len(stack) - len(live)
            if live:
                self._stacks[user_id] = live
            else:
                del self._stacks[user_id]
        return removed

    def start(self) -> None:
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
