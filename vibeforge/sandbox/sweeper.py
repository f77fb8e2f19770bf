"""SandboxSweeper: recurring eviction of idle pooled sandboxes.

Runs as an asyncio.Task owned by the application lifespan. Each cycle sleeps
for the configured interval, then asks the pool to destroy handles idle for
longer than its max age. It only inspects pool state, never the Job Store.

A failing cycle is logged and the loop continues.
"""

import asyncio
from datetime import datetime

import structlog

from vibeforge.sandbox.pool import SandboxPool

logger = structlog.get_logger(__name__)


class SandboxSweeper:
    """Scheduled sweep over a SandboxPool.

    Usage:
        sweeper = SandboxSweeper(pool, interval_seconds=300)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, pool: SandboxPool, interval_seconds: float = 300) -> None:
        self.pool = pool
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._log = logger.bind(interval_seconds=interval_seconds)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="sandbox-sweeper")
        self._log.info("sandbox_sweeper_started")

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep_now()

    async def sweep_now(self, now: datetime | None = None) -> list[str]:
        """Run one sweep cycle immediately. Never raises."""
        try:
            return await self.pool.sweep(now=now)
        except Exception as exc:
            self._log.error("sandbox_sweep_failed", error=str(exc), error_type=type(exc).__name__)
            return []

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._log.info("sandbox_sweeper_stopped")
