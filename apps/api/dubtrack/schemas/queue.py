"""Job queue API schemas."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueJob(BaseModel):
    id: str
    name: str
    state: JobState
    attempt: int
    max_attempts: int
    last_error: str | None = None
    result: dict[str, Any] | None = None
    project_id: str | None = None
    episode_id: str | None = None
    step: int | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class QueueMetrics(BaseModel):
    queued: int
    active: int
    completed: int
    failed: int
    total: int


class QueueStatus(BaseModel):
    metrics: QueueMetrics
    active_jobs: list[QueueJob]


class QueueCleanupResponse(BaseModel):
    removed: int
    metrics: QueueMetrics
