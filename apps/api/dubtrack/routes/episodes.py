"""Episode pipeline routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path, Response, status

from dubtrack.routes.dependencies import get_authenticated_principal, get_pipeline
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.episode import (
    Episode,
    FinalizeRequest,
    PrepareClipsRequest,
    StepRunResponse,
    TranslateRequest,
    VoiceAssignmentsRequest,
    VoiceAssignmentsResponse,
)
from dubtrack.schemas.error import (
    ErrorResponse,
    FsmTransitionError,
    NoLeakNotFoundError,
    PreconditionFailedError,
    UpstreamError,
)
from dubtrack.services.pipeline import PipelineOrchestrator, StepRunResult

router = APIRouter(prefix="/episodes", tags=["Episodes"])

_STEP_RESPONSES = {
    403: {"model": ErrorResponse},
    404: {"model": NoLeakNotFoundError},
    409: {"model": FsmTransitionError | PreconditionFailedError},
}
_UPSTREAM_STEP_RESPONSES = {
    **_STEP_RESPONSES,
    502: {"model": UpstreamError},
    504: {"model": UpstreamError},
}


def _step_response(result: StepRunResult) -> StepRunResponse:
    return StepRunResponse(
        episode=result.episode,
        step=result.step,
        status=result.status,
        job_id=result.job_id,
        replayed=result.replayed,
    )


@router.get(
    "/{episodeId}",
    response_model=Episode,
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def get_episode(
    episode_id: Annotated[str, Path(alias="episodeId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
) -> Episode:
    return pipeline.get_episode(principal=principal, episode_id=episode_id)


@router.post(
    "/{episodeId}/step1",
    response_model=StepRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={200: {"model": StepRunResponse}, **_STEP_RESPONSES},
)
def run_clean_audio(
    episode_id: Annotated[str, Path(alias="episodeId")],
    response: Response,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
) -> StepRunResponse:
    result = pipeline.run_step1(principal=principal, episode_id=episode_id)
    response.status_code = status.HTTP_200_OK if result.replayed else status.HTTP_202_ACCEPTED
    return _step_response(result)


@router.post("/{episodeId}/step2", response_model=StepRunResponse, responses=_STEP_RESPONSES)
def run_prepare_clips(
    episode_id: Annotated[str, Path(alias="episodeId")],
    payload: PrepareClipsRequest,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
) -> StepRunResponse:
    return _step_response(pipeline.run_step2(principal=principal, episode_id=episode_id, request=payload))


@router.post("/{episodeId}/step3", response_model=StepRunResponse, responses=_STEP_RESPONSES)
def run_finalize(
    episode_id: Annotated[str, Path(alias="episodeId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
    payload: FinalizeRequest | None = None,
) -> StepRunResponse:
    reset = payload.reset if payload is not None else None
    return _step_response(pipeline.run_step3(principal=principal, episode_id=episode_id, reset=reset))


@router.post("/{episodeId}/step4", response_model=StepRunResponse, responses=_UPSTREAM_STEP_RESPONSES)
def run_translate(
    episode_id: Annotated[str, Path(alias="episodeId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
    payload: TranslateRequest | None = None,
) -> StepRunResponse:
    target_language = payload.target_language if payload is not None else None
    return _step_response(
        pipeline.run_step4(principal=principal, episode_id=episode_id, target_language=target_language)
    )


@router.post("/{episodeId}/step5", response_model=StepRunResponse, responses=_UPSTREAM_STEP_RESPONSES)
def run_assign_voices(
    episode_id: Annotated[str, Path(alias="episodeId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
) -> StepRunResponse:
    return _step_response(pipeline.run_step5(principal=principal, episode_id=episode_id))


@router.post(
    "/{episodeId}/voice-assignments",
    response_model=VoiceAssignmentsResponse,
    responses={400: {"model": ErrorResponse}, **_STEP_RESPONSES},
)
def save_voice_assignments(
    episode_id: Annotated[str, Path(alias="episodeId")],
    payload: VoiceAssignmentsRequest,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
) -> VoiceAssignmentsResponse:
    result = pipeline.assign_voices(principal=principal, episode_id=episode_id, assignments=payload.assignments)
    return VoiceAssignmentsResponse(
        episode=result.episode,
        character_voices=result.character_voices,
        updated_dialogues=result.updated_dialogues,
        replayed=result.replayed,
    )


@router.get(
    "/{episodeId}/voice-assignments",
    response_model=dict[str, str],
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def get_voice_assignments(
    episode_id: Annotated[str, Path(alias="episodeId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
) -> dict[str, str]:
    return pipeline.get_voice_assignments(principal=principal, episode_id=episode_id)
