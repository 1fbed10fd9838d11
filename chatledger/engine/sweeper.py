import asyncio
from typing import Callable

from loguru import logger


class PeriodicSweeper:
    """Runs a synchronous sweep function on a fixed interval in the background."""

    def __init__(self, name: str, interval: float, sweep: Callable[[], int]):
        self.name = name
        self.interval = interval
        self._sweep = sweep
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"sweep:{self.name}")
        logger.info("Started {} sweep (every {}s)", self.name, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Stopped {} sweep", self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                removed = self._sweep()
            except Exception as e:
                logger.error("{} sweep failed: {}", self.name, e)
                continue
            if removed:
                logger.debug("{} sweep removed {} expired record(s)", self.name, removed)
