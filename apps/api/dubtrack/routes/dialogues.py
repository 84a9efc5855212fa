"""Dialogue review routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from dubtrack.routes.dependencies import get_authenticated_principal, get_dialogue_service
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.dialogue import Dialogue, DialogueUpdateRequest, DialogueUpdateResponse
from dubtrack.schemas.error import ErrorResponse, FsmTransitionError, NoLeakNotFoundError
from dubtrack.services.dialogues import DialogueReviewService

router = APIRouter(tags=["Dialogues"])

_DIALOGUE_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": NoLeakNotFoundError},
}


@router.patch(
    "/dialogues/update/{dialogueNumber}",
    response_model=DialogueUpdateResponse,
    responses={**_DIALOGUE_RESPONSES, 409: {"model": FsmTransitionError}},
)
def update_dialogue(
    dialogue_number: Annotated[str, Path(alias="dialogueNumber")],
    payload: DialogueUpdateRequest,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[DialogueReviewService, Depends(get_dialogue_service)],
) -> DialogueUpdateResponse:
    return service.update_dialogue(principal=principal, dialogue_number=dialogue_number, request=payload)


@router.delete(
    "/dialogues/remove-voice/{dialogueNumber}",
    response_model=DialogueUpdateResponse,
    responses=_DIALOGUE_RESPONSES,
)
def remove_voice(
    dialogue_number: Annotated[str, Path(alias="dialogueNumber")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[DialogueReviewService, Depends(get_dialogue_service)],
) -> DialogueUpdateResponse:
    return service.remove_voice(principal=principal, dialogue_number=dialogue_number)


@router.get("/dialogues/{dialogueNumber}", response_model=Dialogue, responses=_DIALOGUE_RESPONSES)
async def get_dialogue(
    dialogue_number: Annotated[str, Path(alias="dialogueNumber")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[DialogueReviewService, Depends(get_dialogue_service)],
) -> Dialogue:
    return service.get_dialogue(principal=principal, dialogue_number=dialogue_number)


@router.get(
    "/projects/{projectId}/episodes/{episodeNumber}/dialogues",
    response_model=list[Dialogue],
    responses=_DIALOGUE_RESPONSES,
)
async def list_episode_dialogues(
    project_id: Annotated[str, Path(alias="projectId")],
    episode_number: Annotated[int, Path(alias="episodeNumber", ge=1)],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[DialogueReviewService, Depends(get_dialogue_service)],
) -> list[Dialogue]:
    return service.list_dialogues(principal=principal, project_id=project_id, episode_number=episode_number)
