from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from feedwatch.jobs.orchestrator import POLL_TASK_KIND, PollPage, utcnow
from feedwatch.jobs.purge import PURGE_TASK_KIND

logger = logging.getLogger(__name__)


class RunEnqueueError(RuntimeError):
    """The run record exists but its task could not be queued."""

    def __init__(self, message: str, *, run_id: str) -> None:
        super().__init__(message)
        self.run_id = run_id


@dataclass(slots=True)
class FanOutResult:
    run_ids: dict[str, str] = field(default_factory=dict)
    failed_users: list[str] = field(default_factory=list)


def _task_for(run_type: str, user_id: str, run_id: str) -> tuple[str, dict[str, Any]]:
    if run_type == "cleanup":
        return PURGE_TASK_KIND, {"user_id": user_id, "run_id": run_id}
    return POLL_TASK_KIND, PollPage(user_id=user_id, run_id=run_id, run_type=run_type).to_payload()


async def enqueue_run(
    store: Any,
    user_id: str,
    run_type: str,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> str:
    """Record a run as ``enqueued`` and queue its first task.

    If queueing fails the run is closed as ``enqueue_failed`` and ``RunEnqueueError``
    is raised.
    """
    run_id = await store.create_run(user_id, run_type, now=clock())
    kind, payload = _task_for(run_type, user_id, run_id)
    try:
        await store.enqueue_task(kind, payload)
    except Exception as exc:
        logger.exception("task enqueue failed run_id=%s user_id=%s kind=%s", run_id, user_id, kind)
        try:
            await store.update_run(
                user_id,
                run_id,
                {"status": "enqueue_failed", "error_message": str(exc) or type(exc).__name__, "finished_at": clock()},
            )
        except Exception:
            logger.exception("could not mark run enqueue_failed run_id=%s", run_id)
        raise RunEnqueueError(f"could not enqueue {kind} task: {exc}", run_id=run_id) from exc

    logger.info("run enqueued run_id=%s user_id=%s run_type=%s", run_id, user_id, run_type)
    return run_id


async def enqueue_manual_poll(store: Any, user_id: str) -> str:
    return await enqueue_run(store, user_id, "manual")


async def enqueue_manual_purge(store: Any, user_id: str) -> str:
    return await enqueue_run(store, user_id, "cleanup")


async def _fan_out(store: Any, user_ids: list[str], run_type: str) -> FanOutResult:
    result = FanOutResult()
    for user_id in user_ids:
        try:
            result.run_ids[user_id] = await enqueue_run(store, user_id, run_type)
        except Exception:
            logger.exception("scheduled %s enqueue failed user_id=%s", run_type, user_id)
            result.failed_users.append(user_id)
    logger.info(
        "scheduled fan-out run_type=%s enqueued=%s failed=%s",
        run_type,
        len(result.run_ids),
        len(result.failed_users),
    )
    return result


async def enqueue_scheduled_polls(store: Any) -> FanOutResult:
    """One scheduled poll run per user whose scheduler is not switched off."""
    user_ids = await store.list_user_ids(scheduler_enabled_only=True)
    return await _fan_out(store, user_ids, "scheduled")


async def enqueue_scheduled_purges(store: Any) -> FanOutResult:
    user_ids = await store.list_user_ids(scheduler_enabled_only=False)
    return await _fan_out(store, user_ids, "cleanup")
