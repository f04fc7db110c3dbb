"""Poll runs: one user's feeds, processed one page per task.

A run record moves ``enqueued -> running -> done | done_with_errors | failed``. Feeds
are split into pages of ``feeds_per_task``; each page is a separate task whose payload
carries the run id, the page index and the totals accumulated by earlier pages, so
continuation state lives in the queue and not in process memory.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
from opentelemetry import trace

from feedwatch.jobs.options import PipelineOptions
from feedwatch.jobs.processor import FeedResult, process_feed
from feedwatch.jobs.records import Feed
from feedwatch.services.writer import BulkWriter

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

POLL_TASK_KIND = "poll_user"
CLOSED_RUN_STATUSES = {"done", "done_with_errors", "enqueue_failed"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RunTotals:
    feeds_processed: int = 0
    processed: int = 0
    created: int = 0
    errors_count: int = 0
    error_samples: list[str] = field(default_factory=list)

    def add(self, result: FeedResult, *, samples_limit: int) -> None:
        self.feeds_processed += 1
        self.processed += result.processed
        self.created += result.created
        if result.error is not None:
            self.errors_count += 1
            if len(self.error_samples) < samples_limit:
                self.error_samples.append(f"feed {result.feed_id}: {result.error}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "feeds_processed": self.feeds_processed,
            "processed": self.processed,
            "created": self.created,
            "errors_count": self.errors_count,
            "error_samples": list(self.error_samples),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RunTotals":
        data = data or {}
        samples = data.get("error_samples")
        return cls(
            feeds_processed=int(data.get("feeds_processed") or 0),
            processed=int(data.get("processed") or 0),
            created=int(data.get("created") or 0),
            errors_count=int(data.get("errors_count") or 0),
            error_samples=[str(sample) for sample in samples] if isinstance(samples, list) else [],
        )


@dataclass(slots=True)
class PollPage:
    user_id: str
    run_id: str
    run_type: str = "manual"
    page_index: int = 0
    totals: RunTotals = field(default_factory=RunTotals)

    def next_page(self, totals: RunTotals) -> "PollPage":
        return PollPage(
            user_id=self.user_id,
            run_id=self.run_id,
            run_type=self.run_type,
            page_index=self.page_index + 1,
            totals=totals,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "run_id": self.run_id,
            "run_type": self.run_type,
            "page_index": self.page_index,
            "totals": self.totals.to_dict(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PollPage":
        user_id = payload.get("user_id")
        run_id = payload.get("run_id")
        if not user_id or not run_id:
            raise ValueError("poll task payload requires user_id and run_id")
        return cls(
            user_id=str(user_id),
            run_id=str(run_id),
            run_type=str(payload.get("run_type") or "manual"),
            page_index=max(0, int(payload.get("page_index") or 0)),
            totals=RunTotals.from_dict(payload.get("totals")),
        )


def page_count(feed_count: int, feeds_per_task: int) -> int:
    return max(1, math.ceil(feed_count / max(1, feeds_per_task)))


def duration_ms(started_at: Any, finished_at: datetime) -> int | None:
    if not isinstance(started_at, datetime):
        return None
    return max(0, int((finished_at - started_at).total_seconds() * 1000))


async def _heartbeat(store: Any, page: PollPage, totals: RunTotals, *, now: datetime) -> None:
    try:
        await store.update_run(page.user_id, page.run_id, {**totals.to_dict(), "heartbeat_at": now})
    except Exception:
        logger.warning("heartbeat write failed run_id=%s", page.run_id, exc_info=True)


async def _process_page_feeds(
    page: PollPage,
    feeds: list[Feed],
    *,
    store: Any,
    writer: BulkWriter,
    options: PipelineOptions,
    client: httpx.AsyncClient,
    clock: Callable[[], datetime],
) -> RunTotals:
    totals = RunTotals.from_dict(page.totals.to_dict())
    results: asyncio.Queue[FeedResult] = asyncio.Queue()
    limiter = asyncio.Semaphore(options.feed_concurrency)
    now = clock()

    async def run_feed(feed: Feed) -> None:
        async with limiter:
            result = await process_feed(feed, store=store, writer=writer, options=options, client=client, now=now)
        await results.put(result)

    # Single consumer owns the totals; feed workers only publish results.
    async def aggregate(expected: int) -> None:
        for seen in range(1, expected + 1):
            totals.add(await results.get(), samples_limit=options.error_samples_limit)
            if options.heartbeat_every_feeds and seen % options.heartbeat_every_feeds == 0 and seen < expected:
                await _heartbeat(store, page, totals, now=clock())

    aggregator = asyncio.create_task(aggregate(len(feeds)))
    try:
        await asyncio.gather(*(run_feed(feed) for feed in feeds))
        await aggregator
    finally:
        if not aggregator.done():
            aggregator.cancel()
    return totals


async def _mark_failed(store: Any, page: PollPage, exc: BaseException, *, now: datetime) -> None:
    try:
        await store.update_run(
            page.user_id,
            page.run_id,
            {"status": "failed", "error_message": str(exc) or type(exc).__name__, "finished_at": now},
        )
    except Exception:
        logger.exception("could not mark run failed run_id=%s", page.run_id)


async def run_poll_page(
    page: PollPage,
    *,
    store: Any,
    options: PipelineOptions,
    client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict[str, Any]:
    """Process one page of a poll run, then continue to the next page or close the run.

    Anything that escapes per-feed isolation marks the run ``failed`` and is re-raised
    so the task queue can retry the page.
    """
    if client is None:
        async with httpx.AsyncClient(follow_redirects=True, timeout=options.fetch_timeout_seconds) as owned_client:
            return await run_poll_page(page, store=store, options=options, client=owned_client, clock=clock)

    run = await store.get_run(page.user_id, page.run_id)
    if run is None:
        logger.warning("skipping poll page for unknown run_id=%s user_id=%s", page.run_id, page.user_id)
        return {"run_id": page.run_id, "skipped": "run_not_found"}
    if run["status"] in CLOSED_RUN_STATUSES:
        logger.info("skipping poll page for closed run_id=%s status=%s", page.run_id, run["status"])
        return {"run_id": page.run_id, "skipped": run["status"]}

    with tracer.start_as_current_span("run.poll_page") as span:
        span.set_attribute("run.id", page.run_id)
        span.set_attribute("run.page_index", page.page_index)
        try:
            rows = await store.list_feeds(page.user_id)
            feeds = [feed for feed in (Feed.from_row(row) for row in rows) if feed.is_eligible]
            pages_total = page_count(len(feeds), options.feeds_per_task)
            started_at = run.get("started_at")

            if page.page_index == 0:
                started_at = clock()
                await store.update_run(
                    page.user_id,
                    page.run_id,
                    {
                        "status": "running",
                        "started_at": started_at,
                        "feeds_count": len(feeds),
                        "pages_total": pages_total,
                        "pages_done": 0,
                        "finished_at": None,
                        "error_message": None,
                        **RunTotals().to_dict(),
                    },
                )
            else:
                await store.update_run(
                    page.user_id,
                    page.run_id,
                    {"status": "running", "feeds_count": len(feeds), "pages_total": pages_total},
                )

            start = page.page_index * options.feeds_per_task
            page_feeds = feeds[start : start + options.feeds_per_task]
            writer = BulkWriter(
                store,
                page.user_id,
                max_in_flight=options.writer_max_in_flight,
                max_attempts=options.writer_max_attempts,
                touch_on_conflict=options.touch_on_conflict,
            )
            totals = await _process_page_feeds(
                page,
                page_feeds,
                store=store,
                writer=writer,
                options=options,
                client=client,
                clock=clock,
            )
            await writer.close()

            now = clock()
            pages_done = page.page_index + 1
            if pages_done < pages_total:
                await store.update_run(
                    page.user_id,
                    page.run_id,
                    {**totals.to_dict(), "pages_done": pages_done, "heartbeat_at": now},
                )
                await store.enqueue_task(POLL_TASK_KIND, page.next_page(totals).to_payload())
                logger.info(
                    "poll page done run_id=%s page=%s/%s created=%s",
                    page.run_id,
                    pages_done,
                    pages_total,
                    totals.created,
                )
                return {"run_id": page.run_id, "page_index": page.page_index, "continued": True, **totals.to_dict()}

            status = "done" if totals.errors_count == 0 else "done_with_errors"
            await store.update_run(
                page.user_id,
                page.run_id,
                {
                    **totals.to_dict(),
                    "status": status,
                    "pages_done": pages_done,
                    "finished_at": now,
                    "heartbeat_at": now,
                    "duration_ms": duration_ms(started_at, now),
                },
            )
        except Exception as exc:
            logger.exception("poll run failed run_id=%s user_id=%s", page.run_id, page.user_id)
            await _mark_failed(store, page, exc, now=clock())
            raise

        span.set_attribute("run.status", status)
    logger.info(
        "poll run finished run_id=%s status=%s processed=%s created=%s errors=%s",
        page.run_id,
        status,
        totals.processed,
        totals.created,
        totals.errors_count,
    )
    return {"run_id": page.run_id, "page_index": page.page_index, "status": status, **totals.to_dict()}
