"""Internal callback routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from dubtrack.routes.dependencies import get_pipeline, require_callback_secret
from dubtrack.schemas.episode import StepRunResponse
from dubtrack.schemas.error import ErrorResponse, NoLeakNotFoundError
from dubtrack.schemas.internal import CleanAudioCallbackRequest
from dubtrack.services.pipeline import PipelineOrchestrator

router = APIRouter(prefix="/internal", tags=["Internal"])


@router.post(
    "/episodes/{episodeId}/clean-audio",
    response_model=StepRunResponse,
    responses={401: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
def post_clean_audio_callback(
    episode_id: Annotated[str, Path(alias="episodeId")],
    payload: CleanAudioCallbackRequest,
    __: Annotated[None, Depends(require_callback_secret)],
    pipeline: Annotated[PipelineOrchestrator, Depends(get_pipeline)],
) -> StepRunResponse:
    succeeded = payload.status == "completed"
    outputs = (
        {
            "cleaned_speech_key": payload.cleaned_speech_key,
            "music_and_effects_key": payload.music_and_effects_key,
        }
        if succeeded
        else {}
    )
    result = pipeline.record_clean_audio_callback(
        episode_id=episode_id,
        succeeded=succeeded,
        outputs=outputs,
        error=payload.error,
    )
    return StepRunResponse(
        episode=result.episode,
        step=result.step,
        status=result.status,
        job_id=result.job_id,
        replayed=result.replayed,
    )
