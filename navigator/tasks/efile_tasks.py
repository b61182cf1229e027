"""Celery tasks that drive the federal and Maryland e-file queues."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from navigator.core.metrics import EFILE_QUEUE_RUNS
from navigator.efile.types import FEDERAL_QUEUE_NAME, MARYLAND_QUEUE_NAME
from navigator.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


def _make_session_factory():
    """Create a fresh async engine + session factory for Celery worker context.

    The module-level engine from navigator.db.postgres is bound to uvicorn's
    event loop and cannot be reused in a new event loop created by _run_async().
    """
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from navigator.core.config import settings

    engine = create_async_engine(
        settings.postgres_url,
        echo=False,
        pool_size=5,
        max_overflow=5,
        pool_pre_ping=True,
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _run_async(coro):
    """Run an async coroutine from sync Celery task context on a fresh event loop."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@asynccontextmanager
async def _session():
    """Session on a throwaway engine, disposed before the loop closes."""
    session_factory = _make_session_factory()
    async with session_factory() as db:
        try:
            yield db
        finally:
            await db.bind.dispose()


async def _process_federal_async() -> dict:
    from navigator.efile.federal_queue import FederalEFileQueue

    async with _session() as db:
        return asdict(await FederalEFileQueue(db).process_queue())


async def _process_maryland_async() -> dict:
    from navigator.efile.maryland_queue import MarylandEFileQueue

    async with _session() as db:
        return asdict(await MarylandEFileQueue(db).process_queue())


async def _process_acknowledgments_async() -> dict:
    from navigator.efile.federal_queue import FederalEFileQueue

    async with _session() as db:
        return asdict(await FederalEFileQueue(db).process_acknowledgments())


async def _refresh_queue_health_async() -> dict:
    from navigator.efile.federal_queue import FederalEFileQueue
    from navigator.efile.maryland_queue import MarylandEFileQueue

    async with _session() as db:
        federal = await FederalEFileQueue(db).refresh_queue_metadata()
        maryland = await MarylandEFileQueue(db).refresh_queue_metadata()
        await db.commit()
        return {FEDERAL_QUEUE_NAME: asdict(federal), MARYLAND_QUEUE_NAME: asdict(maryland)}


@celery_app.task(name="process_federal_queue")
def process_federal_queue_task():
    """Transmit due federal returns to IRS MeF."""
    try:
        result = _run_async(_process_federal_async())
    except Exception as exc:
        logger.error("Federal queue task failed: %s", exc)
        EFILE_QUEUE_RUNS.labels(queue=FEDERAL_QUEUE_NAME, status="error").inc()
        return {"status": "error", "error": str(exc)}
    if result["processed"]:
        logger.info("Federal queue task: %s", result)
    return result


@celery_app.task(name="process_maryland_queue")
def process_maryland_queue_task():
    """Submit due Maryland returns to iFile and promote returns whose federal return was accepted."""
    try:
        result = _run_async(_process_maryland_async())
    except Exception as exc:
        logger.error("Maryland queue task failed: %s", exc)
        EFILE_QUEUE_RUNS.labels(queue=MARYLAND_QUEUE_NAME, status="error").inc()
        return {"status": "error", "error": str(exc)}
    if result["processed"] or result["promoted"]:
        logger.info("Maryland queue task: %s", result)
    return result


@celery_app.task(name="process_federal_acknowledgments")
def process_federal_acknowledgments_task():
    try:
        return _run_async(_process_acknowledgments_async())
    except Exception as exc:
        logger.error("Acknowledgment task failed: %s", exc)
        return {"status": "error", "error": str(exc)}


@celery_app.task(name="refresh_queue_health")
def refresh_queue_health_task():
    try:
        return _run_async(_refresh_queue_health_async())
    except Exception as exc:
        logger.error("Queue health refresh failed: %s", exc)
        return {"status": "error", "error": str(exc)}
