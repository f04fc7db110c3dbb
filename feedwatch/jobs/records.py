from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

from feedwatch.jobs.content import normalize_content_html_clean
from feedwatch.jobs.locations import LocationClassification
from feedwatch.jobs.sources import SourceAdapter, parse_timestamp

KEY_MAX_LENGTH = 80
_KEY_UNSAFE_RE = re.compile(r"[^a-z0-9\-]+")
_BOARD_PATH_RE = re.compile(r"/v1/boards/([^/?#]+)")
_JOB_BOARD_PATH_RE = re.compile(r"/job-board/([^/?#]+)")
_BOARD_HOSTS = ("boards.greenhouse.io", "job-boards.greenhouse.io", "jobs.ashbyhq.com")


@dataclass(slots=True)
class Feed:
    id: str
    url: str
    name: str | None = None
    active: bool = True
    source: str | None = None

    @property
    def is_eligible(self) -> bool:
        return self.active is not False and bool((self.url or "").strip())

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Feed":
        return cls(
            id=str(row.get("id") or ""),
            url=str(row.get("url") or ""),
            name=row.get("name") or None,
            active=row.get("active") is not False,
            source=row.get("source") or None,
        )


@dataclass(slots=True)
class JobRecord:
    company_key: str
    company_name: str
    job_id: str
    title: str | None
    location_name: str
    state_codes: list[str]
    is_remote: bool
    absolute_url: str | None
    apply_url: str | None
    updated_at_iso: str | None
    updated_at_ts: datetime | None
    first_published_iso: str | None
    metadata_key_value: dict[str, Any]
    metadata_list: list[dict[str, Any]]
    content_html_clean: str
    source: str
    first_seen_at: datetime
    last_seen_at: datetime
    last_ingested_at: datetime
    created_at: datetime
    saved: bool = False

    @property
    def key(self) -> str:
        return identity_key(self.company_key, self.job_id)

    @property
    def freshness_at(self) -> datetime:
        return self.updated_at_ts or self.first_seen_at


@dataclass(slots=True)
class CompanySummary:
    company_key: str
    company_name: str
    url: str
    last_seen_at: datetime


@dataclass(slots=True)
class NormalizedMetadata:
    key_value: dict[str, Any] = field(default_factory=dict)
    items: list[dict[str, Any]] = field(default_factory=list)


def identity_key(company_key: str, job_id: str) -> str:
    return f"{company_key}__{job_id}"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii").rstrip("=")


def _sanitize_key(value: str) -> str:
    cleaned = _KEY_UNSAFE_RE.sub("-", value.strip().lower()).strip("-")
    return cleaned[:KEY_MAX_LENGTH]


def infer_board_key(feed_url: str | None) -> str | None:
    if not feed_url:
        return None
    parsed = urlparse(feed_url)
    path = parsed.path or ""
    for pattern in (_BOARD_PATH_RE, _JOB_BOARD_PATH_RE):
        match = pattern.search(path)
        if match:
            return _sanitize_key(match.group(1)) or None
    host = (parsed.hostname or "").lower()
    if host in _BOARD_HOSTS:
        segments = [segment for segment in path.split("/") if segment]
        if segments:
            return _sanitize_key(segments[0]) or None
    return None


def resolve_company_key(feed: Feed) -> str:
    board = infer_board_key(feed.url)
    if board:
        return board
    feed_id = _sanitize_key(feed.id or "")
    if feed_id:
        return feed_id
    host = _sanitize_key((urlparse(feed.url or "").hostname or "").replace(".", "-"))
    fallback = "-".join(part for part in (host, feed_id) if part)
    return fallback or _b64(feed.url or "unknown")[:KEY_MAX_LENGTH]


def resolve_company_name(feed: Feed, raw: dict[str, Any]) -> str:
    for candidate in (feed.name, raw.get("company_name"), raw.get("companyName")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    board = infer_board_key(feed.url)
    if board:
        return board[:1].upper() + board[1:]
    return "Unknown"


def resolve_job_id(feed_url: str, raw: dict[str, Any]) -> str:
    native = raw.get("id")
    if native is None or native == "":
        native = raw.get("_id")
    if native is not None and native != "":
        return str(native)
    return _b64(f"{feed_url}::{raw.get('absolute_url') or ''}::{raw.get('title') or ''}")


def _normalize_metadata_value(value: Any, value_type: Any) -> Any:
    if value is None:
        return None
    if value_type == "currency" and isinstance(value, dict):
        amount = value.get("amount")
        try:
            amount = float(amount) if amount is not None and amount != "" else None
        except (TypeError, ValueError):
            pass
        unit = value.get("unit") or value.get("currency") or "USD"
        if amount is None:
            return None
        return {"amount": amount, "unit": unit}
    if isinstance(value, list):
        cleaned = []
        for item in value:
            if isinstance(item, str):
                item = item.strip()
            if item:
                cleaned.append(item)
        return cleaned or None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def normalize_metadata(items: Any) -> NormalizedMetadata:
    result = NormalizedMetadata()
    if not isinstance(items, list):
        return result
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        name = name.strip()
        if name in result.key_value:
            continue
        value_type = item.get("value_type", item.get("valueType"))
        value = _normalize_metadata_value(item.get("value"), value_type)
        if value is None:
            continue
        result.key_value[name] = value
        result.items.append({"name": name, "value": value, "value_type": value_type})
    return result


def build_job_record(
    feed: Feed,
    raw: dict[str, Any],
    adapter: SourceAdapter,
    classification: LocationClassification,
    *,
    now: datetime,
    tracker_domains: tuple[str, ...] = (),
    content_max_chars: int = 20000,
) -> JobRecord:
    """Assemble the persisted record for one raw job already in canonical shape."""
    company_key = resolve_company_key(feed)
    metadata = normalize_metadata(raw.get("metadata"))
    location = raw.get("location") if isinstance(raw.get("location"), dict) else {}
    updated_at_iso = raw.get("updated_at") or raw.get("first_published") or None
    return JobRecord(
        company_key=company_key,
        company_name=resolve_company_name(feed, raw),
        job_id=resolve_job_id(feed.url, raw),
        title=raw.get("title") or None,
        location_name=location.get("name") or "",
        state_codes=list(classification.state_codes),
        is_remote=classification.is_remote,
        absolute_url=raw.get("absolute_url") or None,
        apply_url=raw.get("apply_url") or raw.get("absolute_url") or None,
        updated_at_iso=updated_at_iso,
        updated_at_ts=parse_timestamp(updated_at_iso),
        first_published_iso=raw.get("first_published") or None,
        metadata_key_value=metadata.key_value,
        metadata_list=metadata.items,
        content_html_clean=normalize_content_html_clean(
            raw.get("content"),
            tracker_domains=tracker_domains,
            max_chars=content_max_chars,
        ),
        source=adapter.name,
        first_seen_at=now,
        last_seen_at=now,
        last_ingested_at=now,
        created_at=now,
    )
