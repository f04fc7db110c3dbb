from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import feedwatch.core.security as security
from feedwatch.core.auth import Principal
from feedwatch.core.config import Settings, get_settings
from feedwatch.main import app
from feedwatch.services.repository import get_repository
from feedwatch.services.store import InMemoryStore

AUTH = {"Authorization": "Bearer token"}


class BrokenQueueStore(InMemoryStore):
    async def enqueue_task(self, kind, payload):
        raise ConnectionError("queue unavailable")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def runs_client(store: InMemoryStore, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    os.environ["FW_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["FW_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    app.dependency_overrides[get_repository] = lambda: store
    _mock_supabase_user(monkeypatch, {"id": "user-1", "email": "one@example.com"})

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("FW_SUPABASE_URL", None)
    os.environ.pop("FW_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def test_poll_requires_bearer_token(runs_client: TestClient) -> None:
    response = runs_client.post("/runs/poll")
    assert response.status_code == 401


def test_poll_enqueues_run_for_caller_only(runs_client: TestClient, store: InMemoryStore) -> None:
    response = runs_client.post("/runs/poll", headers=AUTH)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "enqueued"
    assert list(store.runs) == ["user-1"]
    assert body["run_id"] in store.runs["user-1"]
    [task] = store.tasks.values()
    assert task["payload"]["user_id"] == "user-1"


def test_purge_enqueues_cleanup_run(runs_client: TestClient, store: InMemoryStore) -> None:
    response = runs_client.post("/runs/purge", headers=AUTH)

    assert response.status_code == 202
    run = store.runs["user-1"][response.json()["run_id"]]
    assert run["run_type"] == "cleanup"


def test_run_history_is_scoped_to_caller(runs_client: TestClient, store: InMemoryStore) -> None:
    now = datetime.now(timezone.utc)

    async def seed() -> tuple[str, str]:
        mine = await store.create_run("user-1", "manual", now=now)
        theirs = await store.create_run("user-2", "manual", now=now)
        return mine, theirs

    mine, theirs = asyncio.run(seed())

    listing = runs_client.get("/runs", headers=AUTH)
    assert listing.status_code == 200
    assert [run["id"] for run in listing.json()] == [mine]

    detail = runs_client.get(f"/runs/{mine}", headers=AUTH)
    assert detail.status_code == 200
    assert detail.json()["status"] == "enqueued"
    assert detail.json()["error_samples"] == []

    assert runs_client.get(f"/runs/{theirs}", headers=AUTH).status_code == 404


def test_enqueue_failure_returns_503_with_run_id(monkeypatch: pytest.MonkeyPatch) -> None:
    broken = BrokenQueueStore()
    os.environ["FW_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["FW_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()
    app.dependency_overrides[get_repository] = lambda: broken
    _mock_supabase_user(monkeypatch, {"id": "user-1"})

    try:
        with TestClient(app) as client:
            response = client.post("/runs/poll", headers=AUTH)
    finally:
        app.dependency_overrides.clear()
        os.environ.pop("FW_SUPABASE_URL", None)
        os.environ.pop("FW_SUPABASE_ANON_KEY", None)
        get_settings.cache_clear()

    assert response.status_code == 503
    run_id = response.json()["detail"]["run_id"]
    assert broken.runs["user-1"][run_id]["status"] == "enqueue_failed"


def test_invalid_supabase_user_is_rejected(runs_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"email": "no-id@example.com"})
    response = runs_client.post("/runs/poll", headers=AUTH)
    assert response.status_code == 401


def test_principal_carries_only_the_supabase_user_id(monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(
        monkeypatch,
        {"id": "user-9", "email": "nine@example.com", "app_metadata": {"role": "admin"}},
    )
    settings = Settings(supabase_url="https://example.supabase.co", supabase_anon_key="anon-key")

    principal = asyncio.run(security.get_user_principal(settings=settings, authorization="Bearer token"))

    assert principal == Principal(subject="user-9")
