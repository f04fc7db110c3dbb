from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlparse


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _dict_items(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


class SourceAdapter:
    """Reads one family of job-board JSON into the canonical raw-job shape.

    The canonical raw shape is Greenhouse-like: ``id``, ``title``, ``absolute_url``,
    ``apply_url``, ``updated_at``, ``first_published``, ``location.name``,
    ``metadata[]``, ``content``, ``company_name`` and an optional ``is_remote`` flag.
    """

    name: str = "unknown"
    host_suffixes: tuple[str, ...] = ()
    # Checked in order; later fields are fallbacks for missing or unparseable earlier ones.
    timestamp_fields: tuple[str, ...] = ("updated_at", "first_published", "updatedAt", "publishedAt")

    @classmethod
    def matches_url(cls, url: str) -> bool:
        if not cls.host_suffixes:
            return False
        host = (urlparse(url).hostname or "").lower()
        return any(host == suffix or host.endswith(f".{suffix}") for suffix in cls.host_suffixes)

    def extract_jobs(self, payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            return _dict_items(payload)
        if not isinstance(payload, dict):
            return []
        for key in ("jobs", "data"):
            if isinstance(payload.get(key), list):
                return _dict_items(payload[key])
        board = payload.get("jobBoard")
        if isinstance(board, dict):
            return _dict_items(board.get("jobs"))
        return []

    def to_canonical_shape(self, raw: dict[str, Any]) -> dict[str, Any]:
        location = raw.get("location")
        if isinstance(location, dict):
            location_name = _as_text(location.get("name")) or ""
        else:
            location_name = _as_text(location) or _as_text(raw.get("location_name")) or ""
        explicit_remote = raw.get("is_remote", raw.get("isRemote"))
        return {
            "id": raw.get("id", raw.get("_id")),
            "title": raw.get("title") or raw.get("name"),
            "absolute_url": raw.get("absolute_url") or raw.get("url"),
            "apply_url": raw.get("apply_url") or raw.get("absolute_url") or raw.get("url"),
            "updated_at": raw.get("updated_at"),
            "first_published": raw.get("first_published"),
            "location": {"name": location_name},
            "metadata": raw.get("metadata") if isinstance(raw.get("metadata"), list) else [],
            "content": raw.get("content") or "",
            "company_name": raw.get("company_name"),
            "is_remote": explicit_remote if isinstance(explicit_remote, bool) else None,
        }

    def source_timestamp(self, raw: dict[str, Any]) -> datetime | None:
        for field_name in self.timestamp_fields:
            parsed = parse_timestamp(raw.get(field_name))
            if parsed is not None:
                return parsed
        return None

    def is_within_window(self, raw: dict[str, Any], now: datetime, window: timedelta) -> bool:
        stamp = self.source_timestamp(raw)
        if stamp is None:
            return False
        return stamp >= now - window


class GreenhouseAdapter(SourceAdapter):
    name = "greenhouse"
    host_suffixes = ("greenhouse.io",)
    timestamp_fields = ("updated_at", "first_published")

    def extract_jobs(self, payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            return _dict_items(payload)
        if isinstance(payload, dict):
            return _dict_items(payload.get("jobs"))
        return []


class AshbyAdapter(SourceAdapter):
    name = "ashby"
    host_suffixes = ("ashbyhq.com",)
    timestamp_fields = ("publishedAt",)

    def extract_jobs(self, payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            return _dict_items(payload)
        if not isinstance(payload, dict):
            return []
        if isinstance(payload.get("jobs"), list):
            return _dict_items(payload["jobs"])
        board = payload.get("jobBoard")
        if isinstance(board, dict):
            return _dict_items(board.get("jobs"))
        return []

    def to_canonical_shape(self, raw: dict[str, Any]) -> dict[str, Any]:
        published = raw.get("publishedAt")
        metadata: list[dict[str, Any]] = []
        for label, key in (("Department", "department"), ("Team", "team"), ("Employment Type", "employmentType")):
            value = _as_text(raw.get(key))
            if value:
                metadata.append({"name": label, "value": value, "value_type": "short_text"})
        location = raw.get("location")
        if isinstance(location, dict):
            location_name = _as_text(location.get("name")) or ""
        else:
            location_name = _as_text(location) or _as_text(raw.get("locationName")) or ""
        is_remote = raw.get("isRemote")
        return {
            "id": raw.get("id"),
            "title": raw.get("title"),
            "absolute_url": raw.get("jobUrl") or raw.get("applyUrl"),
            "apply_url": raw.get("applyUrl") or raw.get("jobUrl"),
            "updated_at": published,
            "first_published": published,
            "location": {"name": location_name},
            "metadata": metadata,
            "content": raw.get("descriptionHtml") or "",
            "company_name": raw.get("companyName"),
            "is_remote": is_remote if isinstance(is_remote, bool) else None,
        }


ADAPTERS: dict[str, SourceAdapter] = {
    adapter.name: adapter for adapter in (GreenhouseAdapter(), AshbyAdapter(), SourceAdapter())
}


def detect_source(feed_url: str | None) -> str:
    if not feed_url:
        return "unknown"
    for adapter in ADAPTERS.values():
        if adapter.matches_url(feed_url):
            return adapter.name
    lowered = feed_url.lower()
    if "greenhouse" in lowered:
        return "greenhouse"
    if "ashby" in lowered:
        return "ashby"
    return "unknown"


def get_adapter(source: str | None) -> SourceAdapter:
    return ADAPTERS.get((source or "").strip().lower(), ADAPTERS["unknown"])


def adapter_for_feed(url: str, explicit_source: str | None = None) -> SourceAdapter:
    if explicit_source and explicit_source.strip().lower() in ADAPTERS:
        return get_adapter(explicit_source)
    return get_adapter(detect_source(url))
