"""Dialogue review service layer."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from dubtrack.adapters.notify import NotificationSink, publish_safely
from dubtrack.core.logging_safety import safe_log_identifier
from dubtrack.domain.dialogue_fsm import DialogueAction, ensure_role_allowed, next_status
from dubtrack.domain.dialogue_number import DialogueNumber
from dubtrack.errors import ApiError, not_found
from dubtrack.repositories.memory import InMemoryStore, ProjectRecord
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.dialogue import Dialogue, DialogueStatus, DialogueUpdateRequest, DialogueUpdateResponse
from dubtrack.services.tenant_router import CollectionHandle, TenantRouter

logger = logging.getLogger(__name__)


def _validation_error(message: str, details: dict | None = None) -> ApiError:
    return ApiError(status_code=400, code="VALIDATION_ERROR", message=message, details=details)


@dataclass(slots=True)
class _Located:
    number: DialogueNumber
    project: ProjectRecord
    roles: set[str]
    handle: CollectionHandle


class DialogueReviewService:
    def __init__(
        self,
        store: InMemoryStore,
        tenant_router: TenantRouter,
        sink: NotificationSink | None = None,
    ) -> None:
        self._store = store
        self._router = tenant_router
        self._sink = sink

    def get_dialogue(self, *, principal: AuthPrincipal, dialogue_number: str) -> Dialogue:
        located = self._locate(principal, dialogue_number)
        dialogue = self._store.find_dialogue(located.handle.collection, located.number.format())
        if dialogue is None:
            raise not_found()
        return Dialogue.model_validate(dialogue)

    def list_dialogues(self, *, principal: AuthPrincipal, project_id: str, episode_number: int) -> list[Dialogue]:
        self._router.resolve_database(principal, project_id)
        project = self._router.get_project(project_id)
        _, handle = self._router.resolve_episode_collection(project, episode_number)
        return [Dialogue.model_validate(item) for item in self._store.list_dialogues(handle.collection)]

    def update_dialogue(
        self,
        *,
        principal: AuthPrincipal,
        dialogue_number: str,
        request: DialogueUpdateRequest,
    ) -> DialogueUpdateResponse:
        action = DialogueAction(request.action)
        located = self._locate(principal, dialogue_number)
        ensure_role_allowed(action, located.roles)
        fields = self._fields_for(action, request)

        def patch(current: dict[str, Any]) -> dict[str, Any]:
            status = next_status(
                action,
                DialogueStatus(current["status"]),
                revision_requested=request.revision_requested,
                needs_rerecord=request.needs_rerecord,
            )
            return {**fields, "status": status.value}

        return self._apply(principal, located, action, patch)

    def remove_voice(self, *, principal: AuthPrincipal, dialogue_number: str) -> DialogueUpdateResponse:
        located = self._locate(principal, dialogue_number)
        ensure_role_allowed(DialogueAction.REMOVE_VOICE, located.roles)

        def patch(current: dict[str, Any]) -> dict[str, Any]:
            status = next_status(DialogueAction.REMOVE_VOICE, DialogueStatus(current["status"]))
            return {
                "voice_over_url": None,
                "processed_voice_over_url": None,
                "voice_over_notes": None,
                "status": status.value,
            }

        return self._apply(principal, located, DialogueAction.REMOVE_VOICE, patch)

    def _apply(self, principal: AuthPrincipal, located: _Located, action: DialogueAction, patch) -> DialogueUpdateResponse:
        number = located.number.format()
        safe_principal_id = safe_log_identifier(principal.user_id, prefix="pid")
        try:
            updated = self._store.update_dialogue_by_number(
                located.handle.collection,
                number,
                patch,
                updated_by=principal.user_id,
            )
        except ApiError as exc:
            logger.warning(
                "dialogue.rejected dialogue_number=%s action=%s principal_id=%s code=%s",
                number,
                action.value,
                safe_principal_id,
                exc.payload.code,
            )
            raise
        if updated is None:
            raise not_found()

        logger.info(
            "dialogue.updated dialogue_number=%s action=%s principal_id=%s status=%s",
            number,
            action.value,
            safe_principal_id,
            updated["status"],
        )
        publish_safely(
            self._sink,
            "dialogue.updated",
            {
                "project_id": located.project.id,
                "collection_name": located.handle.name,
                "dialogue_number": number,
                "action": action.value,
                "status": updated["status"],
            },
        )
        return DialogueUpdateResponse(
            dialogue=Dialogue.model_validate(updated),
            project_id=located.project.id,
            collection_name=located.handle.name,
        )

    def _locate(self, principal: AuthPrincipal, dialogue_number: str) -> _Located:
        number = DialogueNumber.parse(dialogue_number)
        project = self._router.get_project_by_index(number.project)
        self._router.resolve_database(principal, project.id)
        _, handle = self._router.resolve_episode_collection(project, number.episode)
        return _Located(
            number=number,
            project=project,
            roles=self._router.project_roles(principal, project),
            handle=handle,
        )

    @staticmethod
    def _fields_for(action: DialogueAction, request: DialogueUpdateRequest) -> dict[str, Any]:
        if action is DialogueAction.TRANSCRIBE:
            if request.original is None:
                raise _validation_error("Transcription requires the original text")
            fields: dict[str, Any] = {"text.original": request.original}
            if request.character_name is not None:
                fields["character_name"] = request.character_name
            if request.time_start is not None:
                fields["time_start"] = request.time_start
            if request.time_end is not None:
                fields["time_end"] = request.time_end
            return fields

        if action is DialogueAction.TRANSLATE:
            if request.translated is None and request.adapted is None:
                raise _validation_error("Translation requires translated or adapted text")
            fields = {}
            if request.translated is not None:
                fields["text.translated"] = request.translated
            if request.adapted is not None:
                fields["text.adapted"] = request.adapted
            return fields

        if action is DialogueAction.VOICE_OVER:
            if not (request.voice_over_url or "").strip():
                raise _validation_error("A voice-over URL is required", details={"field": "voice_over_url"})
            fields = {"voice_over_url": request.voice_over_url.strip()}
            if request.processed_voice_over_url is not None:
                fields["processed_voice_over_url"] = request.processed_voice_over_url
            if request.voice_over_notes is not None:
                fields["voice_over_notes"] = request.voice_over_notes
            if request.voice_id is not None:
                fields["voice_id"] = request.voice_id
            return fields

        fields = {
            "revision_requested": request.revision_requested,
            "needs_rerecord": request.needs_rerecord,
        }
        if request.director_notes is not None:
            fields["director_notes"] = request.director_notes
        return fields
