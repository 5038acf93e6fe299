"""Periodic maintenance jobs, independent of any request."""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi.concurrency import run_in_threadpool

from kiosk import order_store
from kiosk.config import (
    QUEUE_SWEEP_INTERVAL_SECONDS,
    REGISTRY_RETENTION_SECONDS,
    REGISTRY_SWEEP_INTERVAL_SECONDS,
)
from kiosk.store_resolver import load_store

logger = logging.getLogger(__name__)


async def evict_confirmed_payments(engine, retention_seconds: int = REGISTRY_RETENTION_SECONDS) -> int:
    retention_ms = retention_seconds * 1000
    evicted = engine.registry.sweep_expired(retention_ms)
    engine.forget_expired(retention_ms)
    return evicted


async def sweep_terminal_queues(engine) -> int:
    """Remove finished, canceled and failed intents from every store's terminal."""
    removed = 0
    for store_id in await run_in_threadpool(order_store.list_terminal_stores):
        store = await run_in_threadpool(load_store, store_id)
        if store is None:
            continue
        removed += await engine.sweep_finished_intents(store)
    return removed


def build_scheduler(engine) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 30},
        timezone="UTC",
    )
    scheduler.add_job(
        evict_confirmed_payments, IntervalTrigger(seconds=REGISTRY_SWEEP_INTERVAL_SECONDS),
        id="registry-eviction", args=[engine], replace_existing=True,
    )
    scheduler.add_job(
        sweep_terminal_queues, IntervalTrigger(seconds=QUEUE_SWEEP_INTERVAL_SECONDS),
        id="terminal-queue-sweep", args=[engine], replace_existing=True,
    )
    logger.info("Maintenance jobs: registry every %ss, terminal queues every %ss",
                REGISTRY_SWEEP_INTERVAL_SECONDS, QUEUE_SWEEP_INTERVAL_SECONDS)
    return scheduler
