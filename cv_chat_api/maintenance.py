"""Background expiry of idle conversations."""

import asyncio
from datetime import timedelta

import structlog

from cv_chat_api.persistence import PersistenceCoordinator

logger = structlog.get_logger()


class ExpirySweeper:
    """Runs ``sweep_expired`` on a fixed interval, outside the request path."""

    def __init__(
        self,
        coordinator: PersistenceCoordinator,
        retention: timedelta,
        interval: float,
    ) -> None:
        self._coordinator = coordinator
        self._retention = retention
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        self._task = asyncio.create_task(self._loop(), name="conversation-expiry")
        logger.info(
            "Expiry sweeper started",
            interval_seconds=self._interval,
            retention_hours=self._retention.total_seconds() / 3600,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def run_once(self) -> int:
        return await self._coordinator.sweep_expired(self._retention)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Expiry sweep failed")
