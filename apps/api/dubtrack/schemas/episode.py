"""Episode and pipeline API schemas."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

PIPELINE_STEPS = (1, 2, 3, 4, 5)
PIPELINE_FINISHED_STEP = 6


class EpisodeStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    ERROR = "error"


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class StepState(BaseModel):
    status: StepStatus
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    job_id: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None


class EpisodeSummary(BaseModel):
    id: str
    number: int
    name: str
    collection_name: str
    status: EpisodeStatus
    step: int


class Episode(EpisodeSummary):
    project_id: str
    video_key: str
    steps: dict[str, StepState]
    error: str | None = None
    uploaded_at: datetime
    updated_at: datetime


class StepRunResponse(BaseModel):
    episode: Episode
    step: int
    status: StepStatus
    job_id: str | None = None
    replayed: bool = False


class DialogueInput(BaseModel):
    line_number: int = Field(ge=1)
    character_name: str = Field(min_length=1)
    original: str = ""
    time_start: float | None = None
    time_end: float | None = None


class SceneInput(BaseModel):
    scene_number: int = Field(ge=1)
    description: str | None = None
    time_start: float | None = None
    time_end: float | None = None
    dialogues: list[DialogueInput]


class PrepareClipsRequest(BaseModel):
    scenes: list[SceneInput] = Field(min_length=1)

    @field_validator("scenes")
    @classmethod
    def _unique_scene_numbers(cls, scenes: list[SceneInput]) -> list[SceneInput]:
        numbers = [scene.scene_number for scene in scenes]
        if len(numbers) != len(set(numbers)):
            raise ValueError("scene_number values must be unique")
        return scenes


class FinalizeRequest(BaseModel):
    reset: bool | None = None


class TranslateRequest(BaseModel):
    target_language: str | None = None


class CharacterVoice(BaseModel):
    character_name: str
    voice_id: str
    voice_provider: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class VoiceAssignmentsRequest(BaseModel):
    assignments: list[CharacterVoice]


class VoiceAssignmentsResponse(BaseModel):
    episode: Episode
    character_voices: list[CharacterVoice]
    updated_dialogues: int
    replayed: bool = False
