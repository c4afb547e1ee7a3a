"""Periodic purge of completed operation records."""

import asyncio
from typing import Optional

from hydro.domain.ports.logging_port import LoggingPort
from hydro.domain.ports.tracker_port import OperationTrackerPort
from hydro.infrastructure.adapters.logging_adapter import LoggingAdapter


class RetentionSweeper:
    """
    Background task dropping terminal operations past the retention window.

    An interval of zero disables the sweeper; ``sweep()`` can still be called
    directly.
    """

    def __init__(
        self,
        tracker: OperationTrackerPort,
        retention_seconds: float,
        interval_seconds: float,
        logger: Optional[LoggingPort] = None,
    ) -> None:
        self._tracker = tracker
        self._retention_seconds = retention_seconds
        self._interval_seconds = interval_seconds
        self._logger = logger or LoggingAdapter("hydro.retention")
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self) -> int:
        return self._tracker.purge_expired(self._retention_seconds)

    async def start(self) -> None:
        if self.running or self._interval_seconds <= 0:
            return
        self._task = asyncio.create_task(self._loop(), name="hydro-retention")
        self._logger.info(
            "Retention sweeper started",
            retention_seconds=self._retention_seconds,
            interval_seconds=self._interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        finally:
            self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                self._logger.exception("Retention sweep failed")
