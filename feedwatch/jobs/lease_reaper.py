from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def lease_expired(task: dict[str, Any], now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = task.get("lease_expires_at")
    if not lease:
        return False

    if isinstance(lease, str):
        lease = datetime.fromisoformat(lease.replace("Z", "+00:00"))

    return lease <= now


def should_requeue(task: dict[str, Any], now: datetime | None = None) -> bool:
    """A claimed task whose worker stopped renewing its lease goes back to the queue."""
    return task.get("status") == "claimed" and lease_expired(task, now=now)


async def reap_expired_leases(store: Any, *, limit: int) -> int:
    return await store.requeue_expired_tasks(limit=limit)
