from __future__ import annotations

import copy
import dataclasses
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from feedwatch.jobs.lease_reaper import should_requeue
from feedwatch.jobs.records import CompanySummary, JobRecord
from feedwatch.services.repository import (
    RUN_STATUSES,
    RUN_TYPES,
    RUN_UPDATE_COLUMNS,
    RepositoryConflictError,
    RepositoryNotFoundError,
    WriteOutcome,
    compute_retry_delay_seconds,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local store with the same contract as ``PostgresRepository``.

    Used for local development (``FW_STORE_BACKEND=memory``) and tests. Every
    mutation completes without yielding to the event loop, so create-if-absent is
    atomic with respect to other coroutines.
    """

    def __init__(
        self,
        *,
        task_max_attempts: int = 3,
        task_retry_base_seconds: int = 10,
        task_retry_max_seconds: int = 600,
    ) -> None:
        self.task_max_attempts = max(1, task_max_attempts)
        self.task_retry_base_seconds = max(0, task_retry_base_seconds)
        self.task_retry_max_seconds = max(0, task_retry_max_seconds)
        self.users: dict[str, dict[str, Any]] = {}
        self.feeds: dict[str, dict[str, dict[str, Any]]] = {}
        self.jobs: dict[str, dict[str, dict[str, Any]]] = {}
        self.companies: dict[str, dict[str, dict[str, Any]]] = {}
        self.runs: dict[str, dict[str, dict[str, Any]]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.task_queue: deque[str] = deque()

    async def close(self) -> None:
        return None

    def add_user(self, user_id: str, *, scheduler_enabled: bool = True) -> None:
        self.users[user_id] = {"id": user_id, "scheduler_enabled": scheduler_enabled}

    def add_feed(self, user_id: str, feed: dict[str, Any]) -> None:
        self.users.setdefault(user_id, {"id": user_id, "scheduler_enabled": True})
        self.feeds.setdefault(user_id, {})[str(feed["id"])] = dict(feed)

    async def list_user_ids(self, *, scheduler_enabled_only: bool = False) -> list[str]:
        return sorted(
            user_id
            for user_id, user in self.users.items()
            if not scheduler_enabled_only or user.get("scheduler_enabled") is not False
        )

    async def list_feeds(self, user_id: str) -> list[dict[str, Any]]:
        feeds = self.feeds.get(user_id, {})
        return [dict(feeds[feed_id]) for feed_id in sorted(feeds)]

    async def update_feed_status(
        self,
        user_id: str,
        feed_id: str,
        *,
        checked_at: datetime,
        new_count: int | None,
        error: str | None,
    ) -> None:
        feed = self.feeds.get(user_id, {}).get(feed_id)
        if feed is None:
            return
        feed["last_checked_at"] = checked_at
        if new_count is not None:
            feed["last_new_count"] = new_count
        feed["last_error"] = error

    async def create_job(self, user_id: str, record: JobRecord, *, touch_on_conflict: bool = False) -> WriteOutcome:
        collection = self.jobs.setdefault(user_id, {})
        existing = collection.get(record.key)
        if existing is not None:
            if not touch_on_conflict:
                return WriteOutcome.ALREADY_EXISTS
            existing["last_seen_at"] = record.last_seen_at
            existing["last_ingested_at"] = record.last_ingested_at
            return WriteOutcome.UPDATED
        document = dataclasses.asdict(record)
        document["job_key"] = record.key
        document["freshness_at"] = record.freshness_at
        collection[record.key] = document
        return WriteOutcome.CREATED

    async def upsert_company(self, user_id: str, summary: CompanySummary) -> WriteOutcome:
        collection = self.companies.setdefault(user_id, {})
        existed = summary.company_key in collection
        collection.setdefault(summary.company_key, {}).update(dataclasses.asdict(summary))
        return WriteOutcome.UPDATED if existed else WriteOutcome.CREATED

    async def list_expired_job_keys(self, user_id: str, *, cutoff: datetime, limit: int) -> list[str]:
        expired = [
            (document["freshness_at"], key)
            for key, document in self.jobs.get(user_id, {}).items()
            if document["freshness_at"] < cutoff
        ]
        expired.sort()
        return [key for _, key in expired[: max(1, limit)]]

    async def delete_job(self, user_id: str, job_key: str) -> WriteOutcome:
        if self.jobs.get(user_id, {}).pop(job_key, None) is None:
            return WriteOutcome.NOT_FOUND
        return WriteOutcome.DELETED

    async def create_run(self, user_id: str, run_type: str, *, now: datetime) -> str:
        if run_type not in RUN_TYPES:
            raise RepositoryConflictError(f"unsupported run type: {run_type}")
        run_id = str(uuid4())
        self.runs.setdefault(user_id, {})[run_id] = {
            "id": run_id,
            "user_id": user_id,
            "run_type": run_type,
            "status": "enqueued",
            "feeds_count": 0,
            "feeds_processed": 0,
            "processed": 0,
            "created": 0,
            "deleted": 0,
            "errors_count": 0,
            "error_samples": [],
            "error_message": None,
            "pages_total": None,
            "pages_done": 0,
            "created_at": now,
            "enqueued_at": now,
            "started_at": None,
            "finished_at": None,
            "heartbeat_at": None,
            "duration_ms": None,
        }
        return run_id

    async def get_run(self, user_id: str, run_id: str) -> dict[str, Any] | None:
        run = self.runs.get(user_id, {}).get(run_id)
        return copy.deepcopy(run) if run is not None else None

    async def list_runs(self, user_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        runs = sorted(self.runs.get(user_id, {}).values(), key=lambda run: run["created_at"], reverse=True)
        return [copy.deepcopy(run) for run in runs[: max(1, min(limit, 200))]]

    async def update_run(self, user_id: str, run_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - RUN_UPDATE_COLUMNS
        if unknown:
            raise RepositoryConflictError(f"unknown run fields: {sorted(unknown)}")
        if "status" in fields and fields["status"] not in RUN_STATUSES:
            raise RepositoryConflictError(f"unsupported run status: {fields['status']}")
        run = self.runs.get(user_id, {}).get(run_id)
        if run is None:
            raise RepositoryNotFoundError("run not found")
        run.update(copy.deepcopy(fields))

    async def enqueue_task(self, kind: str, payload: dict[str, Any]) -> str:
        task_id = str(uuid4())
        self.tasks[task_id] = {
            "id": task_id,
            "kind": kind,
            "payload": copy.deepcopy(payload),
            "status": "queued",
            "attempt": 0,
            "next_run_at": _utcnow(),
            "lease_expires_at": None,
            "last_error": None,
            "result": None,
        }
        self.task_queue.append(task_id)
        return task_id

    async def claim_tasks(self, *, limit: int, max_in_flight: int, lease_seconds: int) -> list[dict[str, Any]]:
        now = _utcnow()
        in_flight = sum(
            1
            for task in self.tasks.values()
            if task["status"] == "claimed" and task["lease_expires_at"] and task["lease_expires_at"] > now
        )
        capacity = max(0, min(limit, max_in_flight - in_flight))
        claimed: list[dict[str, Any]] = []
        for task_id in list(self.task_queue):
            if len(claimed) >= capacity:
                break
            task = self.tasks[task_id]
            if task["status"] != "queued" or task["next_run_at"] > now:
                continue
            task["status"] = "claimed"
            task["attempt"] += 1
            task["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            self.task_queue.remove(task_id)
            claimed.append(
                {
                    "id": task_id,
                    "kind": task["kind"],
                    "payload": copy.deepcopy(task["payload"]),
                    "attempt": task["attempt"],
                    "status": "claimed",
                }
            )
        return claimed

    async def complete_task(self, task_id: str, result: dict[str, Any] | None = None) -> None:
        task = self.tasks[task_id]
        task["status"] = "done"
        task["result"] = result
        task["lease_expires_at"] = None

    async def fail_task(self, task_id: str, error: str) -> str:
        task = self.tasks.get(task_id)
        if task is None:
            raise RepositoryNotFoundError("task not found")
        task["last_error"] = error[:2000]
        task["lease_expires_at"] = None
        if task["attempt"] >= self.task_max_attempts:
            task["status"] = "failed"
            return "failed"
        delay = compute_retry_delay_seconds(
            attempt=task["attempt"],
            base_seconds=self.task_retry_base_seconds,
            max_seconds=self.task_retry_max_seconds,
        )
        task["status"] = "queued"
        task["next_run_at"] = _utcnow() + timedelta(seconds=delay)
        self.task_queue.append(task_id)
        return "queued"

    async def requeue_expired_tasks(self, *, limit: int = 100) -> int:
        now = _utcnow()
        requeued = 0
        for task_id, task in self.tasks.items():
            if requeued >= limit:
                break
            if should_requeue(task, now=now):
                task["status"] = "queued"
                task["lease_expires_at"] = None
                task["next_run_at"] = now
                self.task_queue.append(task_id)
                requeued += 1
        return requeued
