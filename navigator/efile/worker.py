"""In-process queue poller.

Alternative to Celery Beat for single-instance deployments: one asyncio
task runs federal and Maryland queue passes on their poll intervals and
polls IRS acknowledgments every ACK_INTERVAL_SECONDS.
"""

from __future__ import annotations

import asyncio
import logging
import time

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from navigator.core.config import settings
from navigator.core.metrics import EFILE_QUEUE_RUNS
from navigator.db.postgres import async_session_factory
from navigator.efile.federal_queue import FederalEFileQueue
from navigator.efile.maryland_queue import MarylandEFileQueue, poll_interval_seconds
from navigator.efile.types import FEDERAL_QUEUE_NAME, MARYLAND_QUEUE_NAME

logger = logging.getLogger(__name__)

ACK_INTERVAL_SECONDS = 300.0
TICK_SECONDS = 1.0


class QueueWorker:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or async_session_factory
        self._task: asyncio.Task | None = None
        self._next_federal = 0.0
        self._next_maryland = 0.0
        self._next_ack = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start polling. Returns False if already running."""
        if self.running:
            return False
        now = time.monotonic()
        self._next_federal = now
        self._next_maryland = now
        self._next_ack = now + ACK_INTERVAL_SECONDS
        self._task = asyncio.create_task(self._run(), name="efile-queue-worker")
        logger.info("E-file queue worker started")
        return True

    async def stop(self) -> bool:
        """Stop polling. Returns False if it was not running."""
        if not self.running:
            return False
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("E-file queue worker stopped")
        return True

    async def _run(self) -> None:
        while True:
            now = time.monotonic()
            if now >= self._next_federal:
                await self.run_federal_pass()
                self._next_federal = time.monotonic() + settings.federal_poll_interval_seconds
            if now >= self._next_maryland:
                await self.run_maryland_pass()
                self._next_maryland = time.monotonic() + poll_interval_seconds()
            if now >= self._next_ack:
                await self.run_acknowledgment_pass()
                self._next_ack = time.monotonic() + ACK_INTERVAL_SECONDS
            await asyncio.sleep(TICK_SECONDS)

    async def run_federal_pass(self) -> None:
        try:
            async with self._session_factory() as session:
                await FederalEFileQueue(session).process_queue()
        except Exception:
            logger.exception("Federal queue pass failed")
            EFILE_QUEUE_RUNS.labels(queue=FEDERAL_QUEUE_NAME, status="error").inc()

    async def run_maryland_pass(self) -> None:
        try:
            async with self._session_factory() as session:
                await MarylandEFileQueue(session).process_queue()
        except Exception:
            logger.exception("Maryland queue pass failed")
            EFILE_QUEUE_RUNS.labels(queue=MARYLAND_QUEUE_NAME, status="error").inc()

    async def run_acknowledgment_pass(self) -> None:
        try:
            async with self._session_factory() as session:
                await FederalEFileQueue(session).process_acknowledgments()
        except Exception:
            logger.exception("Acknowledgment pass failed")


_worker: QueueWorker | None = None


def get_queue_worker() -> QueueWorker:
    global _worker
    if _worker is None:
        _worker = QueueWorker()
    return _worker
