"""Multipart upload routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from dubtrack.routes.dependencies import get_upload_coordinator, require_admin
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.error import ErrorResponse, NoLeakNotFoundError, UpstreamError
from dubtrack.schemas.upload import (
    AbortUploadRequest,
    AbortUploadResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    UploadPartResponse,
)
from dubtrack.services.uploads import UploadCoordinator

router = APIRouter(prefix="/upload", tags=["Uploads"])


@router.post(
    "/init",
    response_model=InitUploadResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 503: {"model": UpstreamError}},
)
def init_upload(
    payload: InitUploadRequest,
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    coordinator: Annotated[UploadCoordinator, Depends(get_upload_coordinator)],
) -> InitUploadResponse:
    session = coordinator.init_upload(
        file_name=payload.file_name,
        content_type=payload.content_type,
        object_key=payload.object_key,
    )
    return InitUploadResponse(upload_id=session.upload_id, object_key=session.object_key)


@router.post(
    "/chunk",
    response_model=UploadPartResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": NoLeakNotFoundError},
        503: {"model": UpstreamError},
    },
)
def upload_chunk(
    upload_id: Annotated[str, Form()],
    object_key: Annotated[str, Form()],
    part_number: Annotated[int, Form()],
    chunk: Annotated[UploadFile, File()],
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    coordinator: Annotated[UploadCoordinator, Depends(get_upload_coordinator)],
) -> UploadPartResponse:
    etag = coordinator.upload_part(
        upload_id=upload_id,
        object_key=object_key,
        part_number=part_number,
        data=chunk.file.read(),
    )
    return UploadPartResponse(part_number=part_number, etag=etag)


@router.post(
    "/complete",
    response_model=CompleteUploadResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": NoLeakNotFoundError},
        409: {"model": ErrorResponse},
        503: {"model": UpstreamError},
    },
)
def complete_upload(
    payload: CompleteUploadRequest,
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    coordinator: Annotated[UploadCoordinator, Depends(get_upload_coordinator)],
) -> CompleteUploadResponse:
    object_key, size = coordinator.complete_upload(
        upload_id=payload.upload_id,
        object_key=payload.object_key,
        parts=[(part.part_number, part.etag) for part in payload.parts],
    )
    return CompleteUploadResponse(object_key=object_key, size=size)


@router.post(
    "/abort",
    response_model=AbortUploadResponse,
    responses={403: {"model": ErrorResponse}, 503: {"model": UpstreamError}},
)
def abort_upload(
    payload: AbortUploadRequest,
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    coordinator: Annotated[UploadCoordinator, Depends(get_upload_coordinator)],
) -> AbortUploadResponse:
    aborted = coordinator.abort_upload(upload_id=payload.upload_id, object_key=payload.object_key)
    return AbortUploadResponse(upload_id=payload.upload_id, aborted=aborted)
