from __future__ import annotations

from typing import Any

import httpx

from feedwatch.jobs.options import PipelineOptions
from feedwatch.jobs.orchestrator import POLL_TASK_KIND, PollPage, run_poll_page
from feedwatch.jobs.purge import PURGE_TASK_KIND, run_purge


async def execute_task(
    task: dict[str, Any],
    *,
    store: Any,
    options: PipelineOptions,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    payload = task.get("payload") or {}
    if task.get("kind") == POLL_TASK_KIND:
        return await run_poll_page(PollPage.from_payload(payload), store=store, options=options, client=client)
    if task.get("kind") == PURGE_TASK_KIND:
        user_id = payload.get("user_id")
        run_id = payload.get("run_id")
        if not user_id or not run_id:
            raise ValueError("purge task payload requires user_id and run_id")
        return await run_purge(str(user_id), str(run_id), store=store, options=options)

    raise ValueError(f"unsupported task kind: {task.get('kind')}")
