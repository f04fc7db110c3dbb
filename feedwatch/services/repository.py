from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from feedwatch.core.config import get_settings
from feedwatch.jobs.records import CompanySummary, JobRecord

TRANSIENT_STORE_CODES = frozenset({"deadline_exceeded", "resource_exhausted", "aborted", "internal", "unavailable"})
RUN_TYPES = {"manual", "scheduled", "cleanup"}
RUN_STATUSES = {"enqueued", "running", "done", "done_with_errors", "failed", "enqueue_failed"}
TERMINAL_RUN_STATUSES = {"done", "done_with_errors", "enqueue_failed"}
TASK_STATUSES = {"queued", "claimed", "done", "failed"}
RUN_UPDATE_COLUMNS = {
    "status",
    "feeds_count",
    "feeds_processed",
    "processed",
    "created",
    "deleted",
    "errors_count",
    "error_samples",
    "error_message",
    "pages_total",
    "pages_done",
    "started_at",
    "finished_at",
    "heartbeat_at",
    "duration_ms",
}


class WriteOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    UPDATED = "updated"
    DELETED = "deleted"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class StoreError(RepositoryError):
    """A job-record write failed; ``code`` says whether retrying can help."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code

    @property
    def transient(self) -> bool:
        return self.code in TRANSIENT_STORE_CODES


_ERROR_CODES: tuple[tuple[type[BaseException], str], ...] = (
    (pg_exc.QueryCanceledError, "deadline_exceeded"),
    (asyncio.TimeoutError, "deadline_exceeded"),
    (pg_exc.TooManyConnectionsError, "resource_exhausted"),
    (pg_exc.InsufficientResourcesError, "resource_exhausted"),
    (pg_exc.SerializationError, "aborted"),
    (pg_exc.DeadlockDetectedError, "aborted"),
    (pg_exc.InternalServerError, "internal"),
    (pg_exc.CannotConnectNowError, "unavailable"),
    (pg_exc.InterfaceError, "unavailable"),
    (RepositoryUnavailableError, "unavailable"),
    (OSError, "unavailable"),
)


def classify_store_error(exc: BaseException) -> str:
    for error_type, code in _ERROR_CODES:
        if isinstance(exc, error_type):
            return code
    return "unknown"


@asynccontextmanager
async def translate_store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except StoreError:
        raise
    except Exception as exc:
        raise StoreError(classify_store_error(exc), f"{operation} failed: {exc}") from exc


def compute_retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max_seconds)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        task_max_attempts: int,
        task_retry_base_seconds: int,
        task_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.task_max_attempts = max(1, task_max_attempts)
        self.task_retry_base_seconds = max(0, task_retry_base_seconds)
        self.task_retry_max_seconds = max(0, task_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def list_user_ids(self, *, scheduler_enabled_only: bool = False) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id
            from users
            where ($1::bool is false or scheduler_enabled is distinct from false)
            order by id asc
            """,
            scheduler_enabled_only,
        )
        return [row["id"] for row in rows]

    async def list_feeds(self, user_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, name, url, active, source
            from feeds
            where user_id = $1
            order by id asc
            """,
            user_id,
        )
        return [dict(row) for row in rows]

    async def update_feed_status(
        self,
        user_id: str,
        feed_id: str,
        *,
        checked_at: datetime,
        new_count: int | None,
        error: str | None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update feeds
            set
              last_checked_at = $3,
              last_new_count = coalesce($4::int, last_new_count),
              last_error = $5
            where user_id = $1 and id = $2
            """,
            user_id,
            feed_id,
            checked_at,
            new_count,
            error,
        )

    async def create_job(self, user_id: str, record: JobRecord, *, touch_on_conflict: bool = False) -> WriteOutcome:
        conflict_clause = (
            """
            on conflict (user_id, job_key) do update
            set last_seen_at = excluded.last_seen_at, last_ingested_at = excluded.last_ingested_at
            returning (xmax = 0) as inserted
            """
            if touch_on_conflict
            else "on conflict (user_id, job_key) do nothing returning true as inserted"
        )
        async with translate_store_errors(f"create job {record.key}"):
            pool = await self._get_pool()
            row = await pool.fetchrow(
                f"""
                insert into job_records (
                  user_id,
                  job_key,
                  company_key,
                  company_name,
                  job_id,
                  title,
                  location_name,
                  state_codes,
                  is_remote,
                  absolute_url,
                  apply_url,
                  updated_at_iso,
                  updated_at_ts,
                  first_published_iso,
                  metadata_key_value,
                  metadata_list,
                  content_html_clean,
                  source,
                  first_seen_at,
                  last_seen_at,
                  last_ingested_at,
                  created_at,
                  freshness_at,
                  saved
                )
                values (
                  $1, $2, $3, $4, $5, $6, $7, $8::text[], $9, $10, $11, $12, $13, $14,
                  $15::jsonb, $16::jsonb, $17, $18, $19, $20, $21, $22, $23, false
                )
                {conflict_clause}
                """,
                user_id,
                record.key,
                record.company_key,
                record.company_name,
                record.job_id,
                record.title,
                record.location_name,
                record.state_codes,
                record.is_remote,
                record.absolute_url,
                record.apply_url,
                record.updated_at_iso,
                record.updated_at_ts,
                record.first_published_iso,
                json.dumps(record.metadata_key_value),
                json.dumps(record.metadata_list),
                record.content_html_clean,
                record.source,
                record.first_seen_at,
                record.last_seen_at,
                record.last_ingested_at,
                record.created_at,
                record.freshness_at,
            )
        if row is None:
            return WriteOutcome.ALREADY_EXISTS
        return WriteOutcome.CREATED if row["inserted"] else WriteOutcome.UPDATED

    async def upsert_company(self, user_id: str, summary: CompanySummary) -> WriteOutcome:
        async with translate_store_errors(f"upsert company {summary.company_key}"):
            pool = await self._get_pool()
            row = await pool.fetchrow(
                """
                insert into companies (user_id, company_key, company_name, url, last_seen_at)
                values ($1, $2, $3, $4, $5)
                on conflict (user_id, company_key) do update
                set company_name = excluded.company_name, url = excluded.url, last_seen_at = excluded.last_seen_at
                returning (xmax = 0) as inserted
                """,
                user_id,
                summary.company_key,
                summary.company_name,
                summary.url,
                summary.last_seen_at,
            )
        return WriteOutcome.CREATED if row and row["inserted"] else WriteOutcome.UPDATED

    async def list_expired_job_keys(self, user_id: str, *, cutoff: datetime, limit: int) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select job_key
            from job_records
            where user_id = $1 and freshness_at < $2
            order by freshness_at asc
            limit $3
            """,
            user_id,
            cutoff,
            max(1, limit),
        )
        return [row["job_key"] for row in rows]

    async def delete_job(self, user_id: str, job_key: str) -> WriteOutcome:
        async with translate_store_errors(f"delete job {job_key}"):
            pool = await self._get_pool()
            status = await pool.execute(
                "delete from job_records where user_id = $1 and job_key = $2",
                user_id,
                job_key,
            )
        return WriteOutcome.DELETED if status.endswith(" 1") else WriteOutcome.NOT_FOUND

    async def create_run(self, user_id: str, run_type: str, *, now: datetime) -> str:
        if run_type not in RUN_TYPES:
            raise RepositoryConflictError(f"unsupported run type: {run_type}")
        pool = await self._get_pool()
        run_id = await pool.fetchval(
            """
            insert into fetch_runs (user_id, run_type, status, created_at, enqueued_at)
            values ($1, $2, 'enqueued', $3, $3)
            returning id::text
            """,
            user_id,
            run_type,
            now,
        )
        return str(run_id)

    async def get_run(self, user_id: str, run_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select
                  id::text as id,
                  user_id,
                  run_type,
                  status,
                  feeds_count,
                  feeds_processed,
                  processed,
                  created,
                  deleted,
                  errors_count,
                  error_samples,
                  error_message,
                  pages_total,
                  pages_done,
                  created_at,
                  enqueued_at,
                  started_at,
                  finished_at,
                  heartbeat_at,
                  duration_ms
                from fetch_runs
                where user_id = $1 and id = $2::uuid
                """,
                user_id,
                run_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._run_row_to_dict(row) if row else None

    async def list_runs(self, user_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id, user_id, run_type, status, feeds_count, feeds_processed, processed,
              created, deleted, errors_count, error_samples, error_message, pages_total, pages_done,
              created_at, enqueued_at, started_at, finished_at, heartbeat_at, duration_ms
            from fetch_runs
            where user_id = $1
            order by created_at desc
            limit $2
            """,
            user_id,
            max(1, min(limit, 200)),
        )
        return [self._run_row_to_dict(row) for row in rows]

    async def update_run(self, user_id: str, run_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - RUN_UPDATE_COLUMNS
        if unknown:
            raise RepositoryConflictError(f"unknown run fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in RUN_STATUSES:
            raise RepositoryConflictError(f"unsupported run status: {fields['status']}")
        if not fields:
            return

        assignments: list[str] = []
        values: list[Any] = [user_id, run_id]
        for column, value in fields.items():
            values.append(json.dumps(value) if column == "error_samples" else value)
            cast = "::jsonb" if column == "error_samples" else ""
            assignments.append(f"{column} = ${len(values)}{cast}")

        pool = await self._get_pool()
        status = await pool.execute(
            f"update fetch_runs set {', '.join(assignments)} where user_id = $1 and id = $2::uuid",
            *values,
        )
        if status.endswith(" 0"):
            raise RepositoryNotFoundError("run not found")

    async def enqueue_task(self, kind: str, payload: dict[str, Any]) -> str:
        pool = await self._get_pool()
        task_id = await pool.fetchval(
            """
            insert into tasks (kind, payload, status, attempt, next_run_at)
            values ($1, $2::jsonb, 'queued', 0, now())
            returning id::text
            """,
            kind,
            json.dumps(payload),
        )
        return str(task_id)

    async def claim_tasks(self, *, limit: int, max_in_flight: int, lease_seconds: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Serialize claimers so the in-flight cap holds across workers.
                await conn.execute("select pg_advisory_xact_lock(hashtext('feedwatch.tasks.claim'))")
                rows = await conn.fetch(
                    """
                    with capacity as (
                      select greatest(
                        0,
                        least(
                          $1::int,
                          $2::int - (
                            select count(*)
                            from tasks
                            where status = 'claimed' and lease_expires_at > now()
                          )
                        )
                      ) as n
                    ),
                    due as (
                      select id
                      from tasks
                      where status = 'queued' and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit (select n from capacity)
                      for update skip locked
                    )
                    update tasks t
                    set
                      status = 'claimed',
                      attempt = t.attempt + 1,
                      claimed_at = now(),
                      lease_expires_at = now() + ($3::int * interval '1 second')
                    from due
                    where t.id = due.id
                    returning t.id::text as id, t.kind, t.payload, t.attempt, t.status
                    """,
                    max(0, limit),
                    max(1, max_in_flight),
                    lease_seconds,
                )
        return [self._task_row_to_dict(row) for row in rows]

    async def complete_task(self, task_id: str, result: dict[str, Any] | None = None) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update tasks
            set status = 'done', result = $2::jsonb, lease_expires_at = null, finished_at = now()
            where id = $1::uuid
            """,
            task_id,
            json.dumps(result) if result is not None else None,
        )

    async def fail_task(self, task_id: str, error: str) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                attempt = await conn.fetchval("select attempt from tasks where id = $1::uuid for update", task_id)
                if attempt is None:
                    raise RepositoryNotFoundError("task not found")
                if int(attempt) >= self.task_max_attempts:
                    status = "failed"
                    delay = 0
                else:
                    status = "queued"
                    delay = compute_retry_delay_seconds(
                        attempt=int(attempt),
                        base_seconds=self.task_retry_base_seconds,
                        max_seconds=self.task_retry_max_seconds,
                    )
                await conn.execute(
                    """
                    update tasks
                    set
                      status = $2,
                      last_error = $3,
                      lease_expires_at = null,
                      next_run_at = now() + ($4::int * interval '1 second')
                    where id = $1::uuid
                    """,
                    task_id,
                    status,
                    error[:2000],
                    delay,
                )
        return status

    async def requeue_expired_tasks(self, *, limit: int = 100) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with expired as (
              select id
              from tasks
              where status = 'claimed' and lease_expires_at is not null and lease_expires_at <= now()
              order by lease_expires_at asc
              limit $1
              for update skip locked
            )
            update tasks t
            set status = 'queued', lease_expires_at = null, next_run_at = now()
            from expired e
            where t.id = e.id
            returning t.id::text as id
            """,
            max(1, min(limit, 1000)),
        )
        return len(rows)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _run_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        run = dict(row)
        samples = run.get("error_samples")
        if isinstance(samples, str):
            try:
                samples = json.loads(samples)
            except json.JSONDecodeError:
                samples = []
        run["error_samples"] = samples if isinstance(samples, list) else []
        return run

    @staticmethod
    def _task_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        payload = row["payload"]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = {}
        return {
            "id": row["id"],
            "kind": row["kind"],
            "payload": payload if isinstance(payload, dict) else {},
            "attempt": int(row["attempt"]),
            "status": row["status"],
        }


@lru_cache
def get_repository() -> Any:
    settings = get_settings()
    if settings.store_backend == "memory":
        from feedwatch.services.store import InMemoryStore

        return InMemoryStore(
            task_max_attempts=settings.task_max_attempts,
            task_retry_base_seconds=settings.task_retry_base_seconds,
            task_retry_max_seconds=settings.task_retry_max_seconds,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        task_max_attempts=settings.task_max_attempts,
        task_retry_base_seconds=settings.task_retry_base_seconds,
        task_retry_max_seconds=settings.task_retry_max_seconds,
    )
