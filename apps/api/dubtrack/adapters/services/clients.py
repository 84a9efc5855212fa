"""Audio cleaner, translation and voice assignment clients."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from dubtrack.adapters.services.base import ServiceClient, UpstreamServiceError


class AudioCleanerClient(ServiceClient):
    """Splits an episode's soundtrack into cleaned speech and music/effects stems."""

    service_name = "audio-cleaner"

    def clean(self, *, video_key: str, output_prefix: str) -> dict[str, str]:
        body = self._post_json("/clean", {"video_key": video_key, "output_prefix": output_prefix})
        if not isinstance(body, dict):
            raise UpstreamServiceError("audio-cleaner returned an unexpected payload")
        speech = body.get("cleaned_speech_key")
        music = body.get("music_and_effects_key")
        if not speech or not music:
            raise UpstreamServiceError("audio-cleaner response is missing output keys")
        return {"cleaned_speech_key": str(speech), "music_and_effects_key": str(music)}


class TranslationClient(ServiceClient):
    service_name = "translation"

    def translate(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        body = self._post_json("/translate", payload)
        dialogues = body.get("dialogues") if isinstance(body, dict) else None
        if not isinstance(dialogues, list) or not all(isinstance(item, dict) for item in dialogues):
            raise UpstreamServiceError("translation response has no dialogue list")
        return dialogues


class VoiceAssignmentClient(ServiceClient):
    service_name = "voice-assignment"

    def assign(self, *, characters: list[str], context: dict[str, Any]) -> list[dict[str, Any]]:
        body = self._post_json("/assign", {"characters": characters, **context})
        voices = body.get("character_voices") if isinstance(body, dict) else None
        if not isinstance(voices, list) or not all(isinstance(item, dict) for item in voices):
            raise UpstreamServiceError("voice-assignment response has no character_voices list")
        return voices


@dataclass(slots=True)
class ExternalServices:
    audio_cleaner: AudioCleanerClient
    translation: TranslationClient
    voice_assignment: VoiceAssignmentClient
