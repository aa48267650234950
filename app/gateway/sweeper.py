# app/gateway/sweeper.py
"""
Background expiry of stale pending invoices.

Runs on a fixed interval independent of request traffic. The sweep is a
single conditional bulk update, so overlapping or skipped runs are harmless.
"""
import asyncio
import logging
from typing import Optional

from starlette.concurrency import run_in_threadpool

from app.gateway import audit
from app.gateway.invoices import InvoiceManager

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically calls InvoiceManager.expire_sweep on the event loop."""

    def __init__(self, invoices: InvoiceManager, interval_seconds: float = 60.0):
        self.invoices = invoices
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> int:
        """Run one sweep in the worker pool. Errors are logged, not raised."""
        try:
            expired = await run_in_threadpool(self.invoices.expire_sweep)
        except Exception as e:
            logger.error(f"[cleanup] Expiry sweep failed: {e}", exc_info=True)
            return 0

        if expired > 0:
            logger.info(f"[cleanup] Expired {expired} invoices")
            audit.log_invoices_expired(expired)
        return expired

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Expiry sweeper started (every {self.interval_seconds}s)")

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
