"""Throttled writer for job-record stores.

Every write goes through ``BulkWriter`` so that a run never has more than
``max_in_flight`` store operations outstanding and transient store failures are
retried a bounded number of times. Creation is decided by the write itself: the
store answers ``created`` or ``already_exists`` and nothing is read beforehand.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from feedwatch.jobs.records import CompanySummary, JobRecord
from feedwatch.services.repository import StoreError, WriteOutcome

logger = logging.getLogger(__name__)

WriteErrorCallback = Callable[[StoreError, int], bool]


@dataclass(slots=True)
class WriteResult:
    key: str
    outcome: WriteOutcome
    attempts: int = 1
    error: str | None = None

    @property
    def created(self) -> bool:
        return self.outcome is WriteOutcome.CREATED


class BulkWriterClosedError(RuntimeError):
    """Raised when work is submitted after ``close()``."""


class BulkWriter:
    def __init__(
        self,
        store: Any,
        user_id: str,
        *,
        max_in_flight: int = 50,
        max_attempts: int = 3,
        touch_on_conflict: bool = False,
        on_write_error: WriteErrorCallback | None = None,
        retry_delay_seconds: float = 0.05,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.max_attempts = max(1, max_attempts)
        self.touch_on_conflict = touch_on_conflict
        self.retry_delay_seconds = retry_delay_seconds
        self._on_write_error = on_write_error or self._default_on_write_error
        self._semaphore = asyncio.Semaphore(max(1, max_in_flight))
        self._pending: set[asyncio.Task[WriteResult]] = set()
        self._closed = False
        self.failures: list[WriteResult] = []

    def on_write_error(self, callback: WriteErrorCallback) -> None:
        self._on_write_error = callback

    def _default_on_write_error(self, error: StoreError, attempt: int) -> bool:
        return error.transient and attempt < self.max_attempts

    async def create_job(self, record: JobRecord) -> WriteResult:
        return await self._submit(
            record.key,
            lambda: self.store.create_job(self.user_id, record, touch_on_conflict=self.touch_on_conflict),
        )

    async def upsert_company(self, summary: CompanySummary) -> WriteResult:
        return await self._submit(summary.company_key, lambda: self.store.upsert_company(self.user_id, summary))

    async def delete_job(self, job_key: str) -> WriteResult:
        return await self._submit(job_key, lambda: self.store.delete_job(self.user_id, job_key))

    async def close(self) -> None:
        """Wait for outstanding writes; unexpected (non-store) errors propagate."""
        self._closed = True
        if not self._pending:
            return
        results = await asyncio.gather(*self._pending, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _submit(self, key: str, operation: Callable[[], Awaitable[WriteOutcome]]) -> WriteResult:
        if self._closed:
            raise BulkWriterClosedError("writer is closed")
        task = asyncio.create_task(self._run(key, operation))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return await asyncio.shield(task)

    async def _run(self, key: str, operation: Callable[[], Awaitable[WriteOutcome]]) -> WriteResult:
        attempt = 0
        async with self._semaphore:
            while True:
                attempt += 1
                try:
                    outcome = await operation()
                    return WriteResult(key=key, outcome=outcome, attempts=attempt)
                except StoreError as exc:
                    if self._on_write_error(exc, attempt):
                        logger.info("retrying store write key=%s attempt=%s code=%s", key, attempt, exc.code)
                        await asyncio.sleep(self.retry_delay_seconds * attempt)
                        continue
                    logger.error(
                        "permanent store write failure key=%s attempts=%s code=%s error=%s",
                        key,
                        attempt,
                        exc.code,
                        exc,
                    )
                    failed = WriteResult(key=key, outcome=WriteOutcome.FAILED, attempts=attempt, error=str(exc))
                    self.failures.append(failed)
                    return failed
