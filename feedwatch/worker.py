from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

import httpx
from opentelemetry import trace

from feedwatch.core.config import Settings, get_settings
from feedwatch.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from feedwatch.jobs.executor import execute_task
from feedwatch.jobs.lease_reaper import reap_expired_leases
from feedwatch.jobs.options import PipelineOptions
from feedwatch.jobs.scheduler import enqueue_scheduled_polls, enqueue_scheduled_purges
from feedwatch.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_task(
    task: dict[str, Any],
    *,
    store: Any,
    options: PipelineOptions,
    client: httpx.AsyncClient,
) -> str:
    """Execute one claimed task and report the outcome back to the queue."""
    with tracer.start_as_current_span("worker.process_task") as task_span:
        task_span.set_attribute("task.id", task["id"])
        task_span.set_attribute("task.kind", str(task.get("kind")))
        try:
            result = await execute_task(task, store=store, options=options, client=client)
        except Exception as exc:
            logger.exception("task execution failed id=%s kind=%s attempt=%s", task["id"], task.get("kind"), task.get("attempt"))
            status = await store.fail_task(task["id"], str(exc) or type(exc).__name__)
            if status == "failed":
                logger.error("task gave up after %s attempts id=%s", task.get("attempt"), task["id"])
            return status

        await store.complete_task(task["id"], result)
        return "done"


async def process_claimed_batch(
    store: Any,
    settings: Settings,
    options: PipelineOptions,
    client: httpx.AsyncClient,
) -> list[str]:
    tasks = await store.claim_tasks(
        limit=settings.max_concurrent_tasks,
        max_in_flight=settings.max_concurrent_tasks,
        lease_seconds=settings.task_lease_seconds,
    )
    if not tasks:
        return []
    return list(
        await asyncio.gather(*(run_task(task, store=store, options=options, client=client) for task in tasks))
    )


async def run_worker(
    settings: Settings | None = None,
    *,
    store: Any = None,
    stop: asyncio.Event | None = None,
) -> None:
    settings = settings or get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")
    store = store if store is not None else get_repository()
    options = PipelineOptions.from_settings(settings)
    stop = stop or asyncio.Event()

    backoff = settings.poll_interval_seconds
    started_at = time.monotonic()
    last_reap_at = 0.0
    last_poll_fanout_at = started_at
    last_cleanup_fanout_at = started_at

    try:
        async with httpx.AsyncClient(follow_redirects=True, timeout=options.fetch_timeout_seconds) as client:
            while not stop.is_set():
                try:
                    with tracer.start_as_current_span("worker.poll_cycle"):
                        now = time.monotonic()
                        if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                            requeued = await reap_expired_leases(store, limit=settings.lease_reaper_batch_size)
                            if requeued:
                                logger.info("requeued expired leases: %s", requeued)
                            last_reap_at = now

                        if settings.worker_schedules_enabled:
                            if now - last_poll_fanout_at >= settings.poll_schedule_interval_seconds:
                                fan_out = await enqueue_scheduled_polls(store)
                                logger.info("scheduled poll runs enqueued: %s", len(fan_out.run_ids))
                                last_poll_fanout_at = now
                            if now - last_cleanup_fanout_at >= settings.cleanup_schedule_interval_seconds:
                                fan_out = await enqueue_scheduled_purges(store)
                                logger.info("scheduled cleanup runs enqueued: %s", len(fan_out.run_ids))
                                last_cleanup_fanout_at = now

                        outcomes = await process_claimed_batch(store, settings, options, client)
                        if not outcomes:
                            await asyncio.sleep(settings.poll_interval_seconds)
                            continue

                    backoff = settings.poll_interval_seconds
                except Exception as exc:  # pragma: no cover - loop robustness
                    jitter = random.uniform(0.0, 0.5)
                    sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                    logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                    await asyncio.sleep(sleep_for)
                    backoff = sleep_for
    finally:
        await store.close()
        shutdown_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
