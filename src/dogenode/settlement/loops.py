"""Supervised background loops."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicTask(ABC):
    """Runs ``run_once`` every ``interval`` seconds until stopped.

    A failing cycle is logged and the loop carries on with the next one.
    """

    name: str = "periodic-task"

    def __init__(self, interval: float):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @abstractmethod
    async def run_once(self) -> int:
        """Run a single cycle; returns the number of items handled."""
        pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.info(f"Started {self.name} (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Stopped {self.name}")

    async def _run(self) -> None:
        while True:
            try:
                handled = await self.run_once()
                if handled:
                    logger.debug(f"{self.name} handled {handled} items")
            except Exception as e:
                logger.error(f"{self.name} cycle failed: {e}", exc_info=True)

            await asyncio.sleep(self.interval)
