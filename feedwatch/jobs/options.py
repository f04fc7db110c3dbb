from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from feedwatch.core.config import Settings

CONFLICT_POLICIES = {"ignore", "touch"}


@dataclass(frozen=True, slots=True)
class PipelineOptions:
    feeds_per_task: int = 100
    feed_concurrency: int = 10
    job_write_concurrency: int = 20
    writer_max_in_flight: int = 50
    writer_max_attempts: int = 3
    fetch_timeout_seconds: float = 15.0
    fetch_max_retries: int = 2
    fetch_backoff_base_seconds: float = 0.5
    update_window: timedelta = timedelta(minutes=60)
    keep_empty_location: bool = True
    non_us_locations: tuple[str, ...] = ()
    content_max_chars: int = 20000
    tracker_domains: tuple[str, ...] = ()
    conflict_policy: str = "ignore"
    error_samples_limit: int = 10
    heartbeat_every_feeds: int = 20
    retention: timedelta = timedelta(days=21)
    purge_page_size: int = 400

    def __post_init__(self) -> None:
        if self.conflict_policy not in CONFLICT_POLICIES:
            raise ValueError(f"unsupported conflict policy: {self.conflict_policy}")

    @property
    def touch_on_conflict(self) -> bool:
        return self.conflict_policy == "touch"

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineOptions":
        return cls(
            feeds_per_task=max(1, settings.feeds_per_task),
            feed_concurrency=max(1, settings.feed_concurrency),
            job_write_concurrency=max(1, settings.job_write_concurrency),
            writer_max_in_flight=max(1, settings.writer_max_in_flight),
            writer_max_attempts=max(1, settings.writer_max_attempts),
            fetch_timeout_seconds=settings.fetch_timeout_seconds,
            fetch_max_retries=max(0, settings.fetch_max_retries),
            fetch_backoff_base_seconds=settings.fetch_backoff_base_seconds,
            update_window=timedelta(minutes=settings.update_window_minutes),
            keep_empty_location=settings.keep_empty_location,
            non_us_locations=tuple(settings.non_us_locations),
            content_max_chars=settings.content_max_chars,
            tracker_domains=tuple(settings.tracker_domains),
            conflict_policy=settings.conflict_policy,
            error_samples_limit=max(0, settings.error_samples_limit),
            heartbeat_every_feeds=max(0, settings.heartbeat_every_feeds),
            retention=timedelta(days=settings.retention_days),
            purge_page_size=max(1, settings.purge_page_size),
        )
