import asyncio
from datetime import date
from typing import Callable

from loguru import logger


class DailyQuota:
    """Per-user, per-calendar-day budget of Layer 3 model calls."""

    def __init__(self, limit: int, today: Callable[[], date] = date.today):
        self.limit = limit
        self._today = today
        self._counts: dict[tuple[str, date], int] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, user_id: str) -> bool:
        """Consume one call if the user is under the limit. Returns whether it was allowed."""
        async with self._lock:
            day = self._today()
            self._prune(day)
            used = self._counts.get((user_id, day), 0)
            if used >= self.limit:
                logger.warning("Daily AI limit reached for {} ({}/{})", user_id, used, self.limit)
                return False
            self._counts[(user_id, day)] = used + 1
            return True

    def usage(self, user_id: str) -> int:
        return self._counts.get((user_id, self._today()), 0)

    def _prune(self, day: date) -> None:
        for key in [key for key in self._counts if key[1] != day]:
            del self._counts[key]
