#!/usr/bin/env python3
"""Fan out scheduled poll or cleanup runs to every user; meant to be run from cron."""

from __future__ import annotations

import argparse
import asyncio

from feedwatch.core.config import get_settings
from feedwatch.core.telemetry import configure_logging
from feedwatch.jobs.scheduler import FanOutResult, enqueue_scheduled_polls, enqueue_scheduled_purges
from feedwatch.services.repository import get_repository


async def enqueue(kind: str) -> FanOutResult:
    store = get_repository()
    try:
        if kind == "cleanup":
            return await enqueue_scheduled_purges(store)
        return await enqueue_scheduled_polls(store)
    finally:
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Enqueue one scheduled run per user.")
    parser.add_argument(
        "kind",
        choices=["poll", "cleanup"],
        help="poll: ingestion runs for users with the scheduler enabled; cleanup: retention purge for all users",
    )
    args = parser.parse_args()

    configure_logging(get_settings())
    result = asyncio.run(enqueue(args.kind))
    print(f"enqueued {len(result.run_ids)} {args.kind} runs; failed users: {len(result.failed_users)}")
    raise SystemExit(1 if result.failed_users else 0)


if __name__ == "__main__":
    main()
