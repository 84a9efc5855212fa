"""Internal callback API schemas."""

from typing import Literal

from pydantic import BaseModel, model_validator


class CleanAudioCallbackRequest(BaseModel):
    status: Literal["completed", "failed"]
    cleaned_speech_key: str | None = None
    music_and_effects_key: str | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _require_outputs_on_success(self) -> "CleanAudioCallbackRequest":
        if self.status == "completed" and not (self.cleaned_speech_key and self.music_and_effects_key):
            raise ValueError("completed callbacks must carry both output keys")
        return self
