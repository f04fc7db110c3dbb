from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from opentelemetry import trace

from feedwatch.jobs.options import PipelineOptions
from feedwatch.jobs.orchestrator import CLOSED_RUN_STATUSES, duration_ms, utcnow
from feedwatch.services.repository import WriteOutcome
from feedwatch.services.writer import BulkWriter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PURGE_TASK_KIND = "purge_user"


async def purge_expired_jobs(
    store: Any,
    writer: BulkWriter,
    *,
    cutoff: datetime,
    page_size: int,
) -> tuple[int, int]:
    """Delete records older than ``cutoff``, oldest first, one page at a time.

    Returns ``(deleted, failed)``.
    """
    deleted = 0
    failed = 0
    while True:
        keys = await store.list_expired_job_keys(writer.user_id, cutoff=cutoff, limit=page_size)
        if not keys:
            break
        results = await asyncio.gather(*(writer.delete_job(key) for key in keys))
        page_deleted = sum(1 for result in results if result.outcome is WriteOutcome.DELETED)
        page_failed = sum(1 for result in results if result.outcome is WriteOutcome.FAILED)
        deleted += page_deleted
        failed += page_failed
        logger.info("purge page user_id=%s deleted=%s failed=%s", writer.user_id, page_deleted, page_failed)
        if len(keys) < page_size:
            break
        if page_deleted == 0:
            # The same keys would come back on the next page.
            break
    return deleted, failed


async def run_purge(
    user_id: str,
    run_id: str,
    *,
    store: Any,
    options: PipelineOptions,
    clock: Callable[[], datetime] = utcnow,
) -> dict[str, Any]:
    run = await store.get_run(user_id, run_id)
    if run is None:
        logger.warning("skipping purge for unknown run_id=%s user_id=%s", run_id, user_id)
        return {"run_id": run_id, "skipped": "run_not_found"}
    if run["status"] in CLOSED_RUN_STATUSES:
        logger.info("skipping purge for closed run_id=%s status=%s", run_id, run["status"])
        return {"run_id": run_id, "skipped": run["status"]}

    with tracer.start_as_current_span("run.purge") as span:
        span.set_attribute("run.id", run_id)
        started_at = clock()
        try:
            await store.update_run(
                user_id,
                run_id,
                {
                    "status": "running",
                    "started_at": started_at,
                    "deleted": 0,
                    "errors_count": 0,
                    "error_samples": [],
                    "error_message": None,
                    "finished_at": None,
                },
            )
            writer = BulkWriter(
                store,
                user_id,
                max_in_flight=options.writer_max_in_flight,
                max_attempts=options.writer_max_attempts,
            )
            cutoff = started_at - options.retention
            deleted, failed = await purge_expired_jobs(
                store,
                writer,
                cutoff=cutoff,
                page_size=options.purge_page_size,
            )
            await writer.close()

            samples = [f"job {failure.key}: {failure.error}" for failure in writer.failures]
            now = clock()
            status = "done" if failed == 0 else "done_with_errors"
            await store.update_run(
                user_id,
                run_id,
                {
                    "status": status,
                    "deleted": deleted,
                    "errors_count": failed,
                    "error_samples": samples[: options.error_samples_limit],
                    "finished_at": now,
                    "duration_ms": duration_ms(started_at, now),
                },
            )
        except Exception as exc:
            logger.exception("purge run failed run_id=%s user_id=%s", run_id, user_id)
            try:
                await store.update_run(
                    user_id,
                    run_id,
                    {"status": "failed", "error_message": str(exc) or type(exc).__name__, "finished_at": clock()},
                )
            except Exception:
                logger.exception("could not mark run failed run_id=%s", run_id)
            raise
        span.set_attribute("run.deleted", deleted)

    logger.info("purge run finished run_id=%s status=%s deleted=%s cutoff=%s", run_id, status, deleted, cutoff)
    return {"run_id": run_id, "status": status, "deleted": deleted, "errors_count": failed}
