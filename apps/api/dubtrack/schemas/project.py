"""Project API schemas."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from dubtrack.schemas.episode import EpisodeSummary

AssignmentRole = Literal["transcriber", "translator", "director", "srDirector", "voiceOver"]


class ProjectStatus(str, Enum):
    INITIALIZING = "initializing"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ON_HOLD = "on_hold"


class Assignment(BaseModel):
    username: str = Field(min_length=1)
    role: AssignmentRole


class AssignUsersRequest(BaseModel):
    assignments: list[Assignment]


class UpdateProjectStatusRequest(BaseModel):
    status: ProjectStatus


class Project(BaseModel):
    id: str
    index: int
    title: str
    description: str | None = None
    slug: str
    database_name: str
    source_language: str | None = None
    target_language: str | None = None
    status: ProjectStatus
    episodes: list[EpisodeSummary]
    assignments: list[Assignment]
    created_by: str
    created_at: datetime
    updated_at: datetime


class FileUploadResult(BaseModel):
    file_name: str
    object_key: str | None = None
    success: bool
    size: int | None = None
    error: str | None = None


class ProjectUploadResponse(BaseModel):
    project: Project
    files: list[FileUploadResult]


class FailedObjectDeletion(BaseModel):
    object_key: str
    error: str


class DeleteProjectResponse(BaseModel):
    project_id: str
    database_name: str
    deleted_objects: list[str]
    failed_objects: list[FailedObjectDeletion]


class DeleteEpisodeResponse(BaseModel):
    project_id: str
    episode_id: str
    collection_name: str
    video_deleted: bool


class ProjectProgress(BaseModel):
    """Share of dialogues, in whole percent, that reached each stage of the review workflow."""

    project_id: str
    transcribed: int
    translated: int
    voice_over: int
    approved: int
    total: int
    last_updated: datetime
