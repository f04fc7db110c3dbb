from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from feedwatch.jobs.records import JobRecord
from feedwatch.services.repository import StoreError, WriteOutcome
from feedwatch.services.store import InMemoryStore
from feedwatch.services.writer import BulkWriter, BulkWriterClosedError

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record(job_id: str, company_key: str = "acme") -> JobRecord:
    return JobRecord(
        company_key=company_key,
        company_name="Acme",
        job_id=job_id,
        title="Engineer",
        location_name="Austin, TX",
        state_codes=["TX"],
        is_remote=False,
        absolute_url=f"https://example.com/jobs/{job_id}",
        apply_url=f"https://example.com/jobs/{job_id}",
        updated_at_iso=None,
        updated_at_ts=None,
        first_published_iso=None,
        metadata_key_value={},
        metadata_list=[],
        content_html_clean="",
        source="greenhouse",
        first_seen_at=NOW,
        last_seen_at=NOW,
        last_ingested_at=NOW,
        created_at=NOW,
    )


class FlakyStore(InMemoryStore):
    def __init__(self, failures: list[str]) -> None:
        super().__init__()
        self.failures = list(failures)
        self.calls = 0

    async def create_job(self, user_id, record, *, touch_on_conflict=False):
        self.calls += 1
        if self.failures:
            raise StoreError(self.failures.pop(0), "simulated")
        return await super().create_job(user_id, record, touch_on_conflict=touch_on_conflict)


def test_create_is_counted_once_for_repeated_key() -> None:
    store = InMemoryStore()

    async def run() -> list:
        writer = BulkWriter(store, "user-1")
        results = await asyncio.gather(*(writer.create_job(_record("1")) for _ in range(5)))
        await writer.close()
        return results

    results = asyncio.run(run())
    assert sum(1 for result in results if result.created) == 1
    assert sum(1 for result in results if result.outcome is WriteOutcome.ALREADY_EXISTS) == 4
    assert list(store.jobs["user-1"]) == ["acme__1"]


def test_existing_document_is_not_overwritten_by_default() -> None:
    store = InMemoryStore()

    async def run() -> WriteOutcome:
        writer = BulkWriter(store, "user-1")
        await writer.create_job(_record("1"))
        store.jobs["user-1"]["acme__1"]["saved"] = True
        replay = _record("1")
        replay.title = "Changed"
        result = await writer.create_job(replay)
        await writer.close()
        return result.outcome

    assert asyncio.run(run()) is WriteOutcome.ALREADY_EXISTS
    document = store.jobs["user-1"]["acme__1"]
    assert document["title"] == "Engineer"
    assert document["saved"] is True


def test_touch_policy_refreshes_only_seen_timestamps() -> None:
    store = InMemoryStore()
    later = datetime(2026, 3, 2, tzinfo=timezone.utc)

    async def run() -> WriteOutcome:
        writer = BulkWriter(store, "user-1", touch_on_conflict=True)
        await writer.create_job(_record("1"))
        replay = _record("1")
        replay.title = "Changed"
        replay.last_seen_at = later
        replay.last_ingested_at = later
        result = await writer.create_job(replay)
        await writer.close()
        return result.outcome

    assert asyncio.run(run()) is WriteOutcome.UPDATED
    document = store.jobs["user-1"]["acme__1"]
    assert document["title"] == "Engineer"
    assert document["last_seen_at"] == later
    assert document["first_seen_at"] == NOW


def test_transient_errors_are_retried_then_succeed() -> None:
    store = FlakyStore(["unavailable", "deadline_exceeded"])

    async def run():
        writer = BulkWriter(store, "user-1", max_attempts=3, retry_delay_seconds=0)
        result = await writer.create_job(_record("1"))
        await writer.close()
        return result

    result = asyncio.run(run())
    assert result.created
    assert result.attempts == 3
    assert store.calls == 3


def test_transient_errors_give_up_after_max_attempts() -> None:
    store = FlakyStore(["unavailable"] * 5)

    async def run():
        writer = BulkWriter(store, "user-1", max_attempts=3, retry_delay_seconds=0)
        result = await writer.create_job(_record("1"))
        await writer.close()
        return result, writer.failures

    result, failures = asyncio.run(run())
    assert result.outcome is WriteOutcome.FAILED
    assert store.calls == 3
    assert failures == [result]


def test_permanent_errors_are_not_retried() -> None:
    store = FlakyStore(["invalid_argument"])

    async def run():
        writer = BulkWriter(store, "user-1", retry_delay_seconds=0)
        result = await writer.create_job(_record("1"))
        await writer.close()
        return result

    result = asyncio.run(run())
    assert result.outcome is WriteOutcome.FAILED
    assert store.calls == 1
    assert "simulated" in (result.error or "")


def test_injected_error_callback_decides_retries() -> None:
    store = FlakyStore(["invalid_argument", "invalid_argument"])
    seen: list[tuple[str, int]] = []

    def retry_everything_twice(error: StoreError, attempt: int) -> bool:
        seen.append((error.code, attempt))
        return attempt < 3

    async def run():
        writer = BulkWriter(store, "user-1", retry_delay_seconds=0)
        writer.on_write_error(retry_everything_twice)
        result = await writer.create_job(_record("1"))
        await writer.close()
        return result

    assert asyncio.run(run()).created
    assert seen == [("invalid_argument", 1), ("invalid_argument", 2)]


def test_in_flight_writes_are_bounded() -> None:
    class SlowStore(InMemoryStore):
        def __init__(self) -> None:
            super().__init__()
            self.active = 0
            self.peak = 0

        async def create_job(self, user_id, record, *, touch_on_conflict=False):
            self.active += 1
            self.peak = max(self.peak, self.active)
            await asyncio.sleep(0.001)
            self.active -= 1
            return await super().create_job(user_id, record, touch_on_conflict=touch_on_conflict)

    store = SlowStore()

    async def run() -> None:
        writer = BulkWriter(store, "user-1", max_in_flight=3)
        await asyncio.gather(*(writer.create_job(_record(str(index))) for index in range(20)))
        await writer.close()

    asyncio.run(run())
    assert store.peak == 3
    assert len(store.jobs["user-1"]) == 20


def test_closed_writer_rejects_new_work() -> None:
    async def run() -> None:
        writer = BulkWriter(InMemoryStore(), "user-1")
        await writer.close()
        await writer.delete_job("acme__1")

    with pytest.raises(BulkWriterClosedError):
        asyncio.run(run())
