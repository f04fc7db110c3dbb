from datetime import datetime, timedelta, timezone

import pytest

from feedwatch.jobs.sources import (
    AshbyAdapter,
    GreenhouseAdapter,
    SourceAdapter,
    adapter_for_feed,
    detect_source,
    parse_timestamp,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://boards-api.greenhouse.io/v1/boards/acme/jobs?content=true", "greenhouse"),
        ("https://api.ashbyhq.com/posting-api/job-board/acme", "ashby"),
        ("https://mirror.example.com/greenhouse/acme.json", "greenhouse"),
        ("https://jobs.example.com/feed.json", "unknown"),
        ("", "unknown"),
    ],
)
def test_detect_source(url: str, expected: str) -> None:
    assert detect_source(url) == expected


def test_explicit_source_overrides_detection() -> None:
    assert adapter_for_feed("https://jobs.example.com/feed.json", "Ashby").name == "ashby"
    assert adapter_for_feed("https://boards-api.greenhouse.io/v1/boards/acme/jobs", "bogus").name == "greenhouse"


def test_extract_jobs_envelopes() -> None:
    jobs = [{"id": 1}, "not-a-job", {"id": 2}]
    assert GreenhouseAdapter().extract_jobs({"jobs": jobs}) == [{"id": 1}, {"id": 2}]
    assert GreenhouseAdapter().extract_jobs(jobs) == [{"id": 1}, {"id": 2}]
    assert AshbyAdapter().extract_jobs({"jobBoard": {"jobs": jobs}}) == [{"id": 1}, {"id": 2}]
    assert SourceAdapter().extract_jobs({"data": jobs}) == [{"id": 1}, {"id": 2}]
    assert SourceAdapter().extract_jobs({"unexpected": True}) == []
    assert SourceAdapter().extract_jobs("nope") == []


def test_greenhouse_window_uses_updated_at_then_first_published() -> None:
    adapter = GreenhouseAdapter()
    window = timedelta(hours=1)
    fresh = {"updated_at": (NOW - timedelta(minutes=10)).isoformat()}
    stale = {"updated_at": (NOW - timedelta(hours=3)).isoformat()}
    fallback = {"updated_at": "not a date", "first_published": (NOW - timedelta(minutes=5)).isoformat()}

    assert adapter.is_within_window(fresh, NOW, window)
    assert not adapter.is_within_window(stale, NOW, window)
    assert adapter.is_within_window(fallback, NOW, window)
    assert not adapter.is_within_window({}, NOW, window)


def test_ashby_window_uses_published_at() -> None:
    adapter = AshbyAdapter()
    raw = {"publishedAt": "2026-03-01T11:30:00.000Z"}
    assert adapter.is_within_window(raw, NOW, timedelta(hours=1))
    assert not adapter.is_within_window(raw, NOW, timedelta(minutes=10))


def test_ashby_canonical_shape() -> None:
    raw = {
        "id": "8f6c",
        "title": "Staff Engineer",
        "jobUrl": "https://jobs.ashbyhq.com/acme/8f6c",
        "applyUrl": "https://jobs.ashbyhq.com/acme/8f6c/application",
        "publishedAt": "2026-03-01T11:30:00.000Z",
        "location": "Remote - US",
        "isRemote": True,
        "department": "Engineering",
        "team": "  ",
        "employmentType": "FullTime",
        "descriptionHtml": "<p>Build things</p>",
        "companyName": "Acme",
    }
    canonical = AshbyAdapter().to_canonical_shape(raw)

    assert canonical["absolute_url"] == "https://jobs.ashbyhq.com/acme/8f6c"
    assert canonical["apply_url"] == "https://jobs.ashbyhq.com/acme/8f6c/application"
    assert canonical["updated_at"] == canonical["first_published"] == "2026-03-01T11:30:00.000Z"
    assert canonical["location"] == {"name": "Remote - US"}
    assert canonical["is_remote"] is True
    assert canonical["content"] == "<p>Build things</p>"
    assert canonical["metadata"] == [
        {"name": "Department", "value": "Engineering", "value_type": "short_text"},
        {"name": "Employment Type", "value": "FullTime", "value_type": "short_text"},
    ]


def test_greenhouse_canonical_shape_keeps_location_and_metadata() -> None:
    raw = {
        "id": 4012,
        "title": "Designer",
        "absolute_url": "https://boards.greenhouse.io/acme/jobs/4012",
        "updated_at": "2026-03-01T07:00:00-05:00",
        "location": {"name": "New York, NY"},
        "metadata": [{"name": "Level", "value": "Senior", "value_type": "single_select"}],
        "content": "&lt;p&gt;Hi&lt;/p&gt;",
    }
    canonical = GreenhouseAdapter().to_canonical_shape(raw)
    assert canonical["id"] == 4012
    assert canonical["apply_url"] == "https://boards.greenhouse.io/acme/jobs/4012"
    assert canonical["location"] == {"name": "New York, NY"}
    assert canonical["metadata"][0]["name"] == "Level"
    assert canonical["is_remote"] is None
    assert GreenhouseAdapter().source_timestamp(raw) == NOW


def test_parse_timestamp_normalizes_to_utc() -> None:
    assert parse_timestamp("2026-03-01T12:00:00Z") == NOW
    assert parse_timestamp("2026-03-01T12:00:00") == NOW
    assert parse_timestamp("") is None
    assert parse_timestamp(1234) is None
