"""Dialogue review API schemas."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class DialogueStatus(str, Enum):
    PENDING = "pending"
    TRANSCRIBED = "transcribed"
    TRANSLATED = "translated"
    APPROVED = "approved"
    REVISION_REQUESTED = "revision-requested"
    NEEDS_RERECORD = "needs-rerecord"
    VOICE_OVER_ADDED = "voice-over-added"


class DialogueText(BaseModel):
    original: str = ""
    translated: str = ""
    adapted: str = ""


class Dialogue(BaseModel):
    dialogue_number: str
    scene_number: int
    line_number: int
    character_name: str
    text: DialogueText
    time_start: float | None = None
    time_end: float | None = None
    clip_key: str | None = None
    status: DialogueStatus
    voice_over_url: str | None = None
    processed_voice_over_url: str | None = None
    voice_id: str | None = None
    director_notes: str | None = None
    voice_over_notes: str | None = None
    revision_requested: bool = False
    needs_rerecord: bool = False
    updated_at: datetime | None = None
    updated_by: str | None = None


class DialogueUpdateRequest(BaseModel):
    """One review action plus the fields that action writes."""

    action: Literal["transcribe", "translate", "voice_over", "review"]
    character_name: str | None = Field(default=None, min_length=1)
    original: str | None = None
    translated: str | None = None
    adapted: str | None = None
    time_start: float | None = None
    time_end: float | None = None
    voice_over_url: str | None = None
    processed_voice_over_url: str | None = None
    voice_over_notes: str | None = None
    voice_id: str | None = None
    director_notes: str | None = None
    revision_requested: bool = False
    needs_rerecord: bool = False


class DialogueUpdateResponse(BaseModel):
    dialogue: Dialogue
    project_id: str
    collection_name: str
