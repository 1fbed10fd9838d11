"""
Pending conversational state.

Each user may hold at most one live record per PendingKind. Records expire
after a per-kind TTL: expired records read as absent and are removed by a
periodic sweep so abandoned conversations do not accumulate.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from loguru import logger

from chatledger.config import Settings
from chatledger.engine.sweeper import PeriodicSweeper
from chatledger.models.schemas import PendingKind

Clock = Callable[[], float]


@dataclass
class PendingRecord:
    user_id: str
    kind: PendingKind
    payload: dict[str, Any]
    created_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class PendingStateStore(Protocol):
    def set(self, user_id: str, kind: PendingKind, payload: dict[str, Any],
            ttl: float | None = None) -> PendingRecord: ...

    def get(self, user_id: str, kind: PendingKind) -> PendingRecord | None: ...

    def claim(self, user_id: str, kind: PendingKind,
              match: Callable[[PendingRecord], bool] | None = None) -> PendingRecord | None: ...

    def delete(self, user_id: str, kind: PendingKind) -> bool: ...

    def sweep(self) -> int: ...


def ttls_from_settings(settings: Settings) -> dict[PendingKind, float]:
    return {
        PendingKind.OCR_CONFIRMATION: settings.pending_ttl_seconds,
        PendingKind.DUPLICATE_CONFIRMATION: settings.pending_ttl_seconds,
        PendingKind.CREDIT_MODE_SELECTION: settings.credit_mode_ttl_seconds,
        PendingKind.INSTALLMENT_CARD_SELECTION: settings.installment_ttl_seconds,
        PendingKind.PAYOFF_FLOW: settings.pending_ttl_seconds,
        PendingKind.MODE_SWITCH_WARNING: settings.pending_ttl_seconds,
    }


@dataclass
class InMemoryPendingStateStore:
    """Process-local PendingStateStore keyed by user id, then by kind."""

    ttls: dict[PendingKind, float] = field(default_factory=dict)
    default_ttl: float = 300.0
    clock: Clock = time.monotonic
    sweep_interval: float = 60.0
    _records: dict[str, dict[PendingKind, PendingRecord]] = field(default_factory=dict)

    def __post_init__(self):
        self.sweeper = PeriodicSweeper("pending-state", self.sweep_interval, self.sweep)

    def ttl_for(self, kind: PendingKind) -> float:
        return self.ttls.get(kind, self.default_ttl)

    def set(self, user_id, kind, payload, ttl=None) -> PendingRecord:
        record = PendingRecord(
            user_id=user_id,
            kind=kind,
            payload=dict(payload),
            created_at=self.clock(),
            ttl=ttl if ttl is not None else self.ttl_for(kind),
        )
        user_records = self._records.setdefault(user_id, {})
        if kind in user_records:
            logger.debug("Replacing pending {} for {}", kind.value, user_id)
        user_records[kind] = record
        logger.info("Stored pending {} for {} (ttl {}s)", kind.value, user_id, record.ttl)
        return record

    def get(self, user_id, kind) -> PendingRecord | None:
        user_records = self._records.get(user_id)
        if not user_records:
            return None
        record = user_records.get(kind)
        if record is None:
            return None
        if record.expired(self.clock()):
            logger.info("Pending {} for {} expired", kind.value, user_id)
            self._remove(user_id, kind)
            return None
        return record

    def has(self, user_id: str, kind: PendingKind) -> bool:
        return self.get(user_id, kind) is not None

    def claim(self, user_id, kind, match=None) -> PendingRecord | None:
        """Atomically read and delete a live record, optionally only if it matches."""
        record = self.get(user_id, kind)
        if record is None:
            return None
        if match is not None and not match(record):
            return None
        self._remove(user_id, kind)
        logger.debug("Claimed pending {} for {}", kind.value, user_id)
        return record

    def delete(self, user_id, kind) -> bool:
        existed = self.get(user_id, kind) is not None
        self._remove(user_id, kind)
        if existed:
            logger.info("Cleared pending {} for {}", kind.value, user_id)
        return existed

    def kinds(self, user_id: str) -> list[PendingKind]:
        return [kind for kind in list(self._records.get(user_id, {})) if self.has(user_id, kind)]

    def sweep(self) -> int:
        now = self.clock()
        removed = 0
        for user_id in list(self._records):
            for kind, record in list(self._records[user_id].items()):
                if record.expired(now):
                    self._remove(user_id, kind)
                    removed += 1
        return removed

    def clear(self) -> None:
        self._records.clear()

    def _remove(self, user_id: str, kind: PendingKind) -> None:
        user_records = self._records.get(user_id)
        if not user_records:
            return
        user_records.pop(kind, None)
        if not user_records:
            del self._records[user_id]

    def start(self) -> None:
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
