"""Project routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Path, UploadFile, status

from dubtrack.routes.dependencies import get_authenticated_principal, get_project_service
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.error import ErrorResponse, NoLeakNotFoundError, UpstreamError
from dubtrack.schemas.project import (
    AssignUsersRequest,
    DeleteEpisodeResponse,
    DeleteProjectResponse,
    Project,
    ProjectProgress,
    ProjectUploadResponse,
    UpdateProjectStatusRequest,
)
from dubtrack.services.projects import ProjectService, VideoFile

router = APIRouter(tags=["Projects"])


def _video_files(videos: list[UploadFile]) -> list[VideoFile]:
    return [
        VideoFile(
            file_name=video.filename or "",
            content_type=video.content_type,
            stream=video.file,
            size=video.size,
        )
        for video in videos
    ]


@router.post(
    "/episodes",
    response_model=ProjectUploadResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": UpstreamError},
    },
)
def create_project_with_episodes(
    title: Annotated[str, Form()],
    videos: Annotated[list[UploadFile], File()],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
    description: Annotated[str | None, Form()] = None,
    source_language: Annotated[str | None, Form()] = None,
    target_language: Annotated[str | None, Form()] = None,
) -> ProjectUploadResponse:
    result = service.create_project_with_videos(
        principal=principal,
        title=title,
        videos=_video_files(videos),
        description=description,
        source_language=source_language,
        target_language=target_language,
    )
    return ProjectUploadResponse(project=result.project, files=result.files)


@router.post(
    "/projects/{projectId}/episodes",
    response_model=ProjectUploadResponse,
    status_code=status.HTTP_201_CREATED,
    responses={404: {"model": NoLeakNotFoundError}, 503: {"model": UpstreamError}},
)
def add_episodes(
    project_id: Annotated[str, Path(alias="projectId")],
    videos: Annotated[list[UploadFile], File()],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> ProjectUploadResponse:
    result = service.add_episodes(principal=principal, project_id=project_id, videos=_video_files(videos))
    return ProjectUploadResponse(project=result.project, files=result.files)


@router.get("/projects", response_model=list[Project])
async def list_projects(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> list[Project]:
    return service.list_projects(principal=principal)


@router.get(
    "/projects/{projectId}",
    response_model=Project,
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def get_project(
    project_id: Annotated[str, Path(alias="projectId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> Project:
    return service.get_project(principal=principal, project_id=project_id)


@router.get(
    "/projects/{projectId}/progress",
    response_model=ProjectProgress,
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
def get_project_progress(
    project_id: Annotated[str, Path(alias="projectId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> ProjectProgress:
    return service.get_progress(principal=principal, project_id=project_id)


@router.post(
    "/projects/{projectId}/assign",
    response_model=Project,
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def assign_users(
    project_id: Annotated[str, Path(alias="projectId")],
    payload: AssignUsersRequest,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> Project:
    return service.assign_users(principal=principal, project_id=project_id, assignments=payload.assignments)


@router.patch(
    "/projects/{projectId}/status",
    response_model=Project,
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
async def update_project_status(
    project_id: Annotated[str, Path(alias="projectId")],
    payload: UpdateProjectStatusRequest,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> Project:
    return service.update_status(principal=principal, project_id=project_id, status=payload.status)


@router.delete(
    "/projects/{projectId}",
    response_model=DeleteProjectResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
def delete_project(
    project_id: Annotated[str, Path(alias="projectId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> DeleteProjectResponse:
    return service.delete_project(principal=principal, project_id=project_id)


@router.delete(
    "/projects/{projectId}/episodes/{episodeId}",
    response_model=DeleteEpisodeResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": NoLeakNotFoundError}},
)
def delete_episode(
    project_id: Annotated[str, Path(alias="projectId")],
    episode_id: Annotated[str, Path(alias="episodeId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[ProjectService, Depends(get_project_service)],
) -> DeleteEpisodeResponse:
    return service.delete_episode(principal=principal, project_id=project_id, episode_id=episode_id)
