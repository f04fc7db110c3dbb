from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

RunType = Literal["manual", "scheduled", "cleanup"]
RunStatus = Literal["enqueued", "running", "done", "done_with_errors", "failed", "enqueue_failed"]


class RunAccepted(BaseModel):
    run_id: str
    status: RunStatus = "enqueued"


class RunOut(BaseModel):
    id: str
    run_type: RunType
    status: RunStatus
    feeds_count: int = 0
    feeds_processed: int = 0
    processed: int = 0
    created: int = 0
    deleted: int = 0
    errors_count: int = 0
    error_samples: list[str] = Field(default_factory=list)
    error_message: str | None = None
    pages_total: int | None = None
    pages_done: int = 0
    created_at: datetime
    enqueued_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    heartbeat_at: datetime | None = None
    duration_ms: int | None = None
