from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from opentelemetry import trace

from feedwatch.jobs.locations import classify_location, should_keep_location
from feedwatch.jobs.options import PipelineOptions
from feedwatch.jobs.records import CompanySummary, Feed, JobRecord, build_job_record
from feedwatch.jobs.sources import SourceAdapter, adapter_for_feed
from feedwatch.services.feed_client import fetch_json
from feedwatch.services.writer import BulkWriter, WriteResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class FeedResult:
    feed_id: str
    processed: int = 0
    created: int = 0
    write_failures: int = 0
    error: str | None = None


def select_jobs(
    feed: Feed,
    payload: Any,
    adapter: SourceAdapter,
    options: PipelineOptions,
    *,
    now: datetime,
) -> list[JobRecord]:
    """Window and location filters, then the canonical record for every survivor."""
    records: list[JobRecord] = []
    for raw in adapter.extract_jobs(payload):
        if not adapter.is_within_window(raw, now, options.update_window):
            continue
        canonical = adapter.to_canonical_shape(raw)
        location_name = canonical["location"]["name"]
        explicit_remote = canonical.get("is_remote")
        if not should_keep_location(
            location_name,
            explicit_remote=explicit_remote,
            non_us_locations=options.non_us_locations,
            keep_empty=options.keep_empty_location,
        ):
            continue
        classification = classify_location(
            location_name,
            explicit_remote=explicit_remote,
            non_us_locations=options.non_us_locations,
        )
        records.append(
            build_job_record(
                feed,
                canonical,
                adapter,
                classification,
                now=now,
                tracker_domains=options.tracker_domains,
                content_max_chars=options.content_max_chars,
            )
        )
    return records


async def _write_records(writer: BulkWriter, records: list[JobRecord], concurrency: int) -> list[WriteResult]:
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def write_one(record: JobRecord) -> WriteResult:
        async with semaphore:
            return await writer.create_job(record)

    return list(await asyncio.gather(*(write_one(record) for record in records)))


async def _record_feed_status(
    store: Any,
    user_id: str,
    feed: Feed,
    *,
    now: datetime,
    new_count: int | None,
    error: str | None,
) -> None:
    try:
        await store.update_feed_status(user_id, feed.id, checked_at=now, new_count=new_count, error=error)
    except Exception:
        logger.warning("could not record status for feed_id=%s", feed.id, exc_info=True)


async def process_feed(
    feed: Feed,
    *,
    store: Any,
    writer: BulkWriter,
    options: PipelineOptions,
    client: httpx.AsyncClient,
    now: datetime,
) -> FeedResult:
    """Fetch one feed and create the records it has not produced before.

    Failures stay inside this feed: they are logged and returned on the result so
    sibling feeds keep going.
    """
    result = FeedResult(feed_id=feed.id)
    with tracer.start_as_current_span("feed.process") as span:
        span.set_attribute("feed.id", feed.id)
        try:
            adapter = adapter_for_feed(feed.url, feed.source)
            span.set_attribute("feed.source", adapter.name)
            payload = await fetch_json(
                feed.url,
                client=client,
                timeout_seconds=options.fetch_timeout_seconds,
                max_retries=options.fetch_max_retries,
                backoff_base_seconds=options.fetch_backoff_base_seconds,
            )
            records = select_jobs(feed, payload, adapter, options, now=now)
            result.processed = len(records)

            writes = await _write_records(writer, records, options.job_write_concurrency)
            result.created = sum(1 for write in writes if write.created)
            result.write_failures = sum(1 for write in writes if write.error is not None)

            if records:
                await writer.upsert_company(
                    CompanySummary(
                        company_key=records[0].company_key,
                        company_name=records[0].company_name,
                        url=feed.url,
                        last_seen_at=now,
                    )
                )
            if result.write_failures:
                result.error = f"{result.write_failures} job writes failed"
        except Exception as exc:
            logger.exception("feed processing failed feed_id=%s url=%s", feed.id, feed.url)
            result.error = str(exc) or type(exc).__name__

        span.set_attribute("feed.processed", result.processed)
        span.set_attribute("feed.created", result.created)
        await _record_feed_status(
            store,
            writer.user_id,
            feed,
            now=now,
            new_count=result.created if result.error is None else None,
            error=result.error,
        )
    logger.info(
        "feed processed feed_id=%s processed=%s created=%s error=%s",
        feed.id,
        result.processed,
        result.created,
        result.error,
    )
    return result
