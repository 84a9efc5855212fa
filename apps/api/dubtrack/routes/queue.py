"""Job queue routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from dubtrack.errors import ApiError, not_found
from dubtrack.routes.dependencies import get_authenticated_principal, get_job_queue, get_tenant_router, require_admin
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.error import ErrorResponse, NoLeakNotFoundError
from dubtrack.schemas.queue import QueueCleanupResponse, QueueJob, QueueMetrics, QueueStatus
from dubtrack.services.job_queue import JobQueue, QueueJobRecord
from dubtrack.services.tenant_router import TenantRouter

router = APIRouter(prefix="/queue", tags=["Queue"])


def _to_queue_job(record: QueueJobRecord) -> QueueJob:
    return QueueJob(
        id=record.id,
        name=record.name,
        state=record.state,
        attempt=record.attempt,
        max_attempts=record.max_attempts,
        last_error=record.last_error,
        result=record.result,
        project_id=record.project_id,
        episode_id=record.episode_id,
        step=record.step,
        created_at=record.created_at,
        started_at=record.started_at,
        finished_at=record.finished_at,
    )


@router.get("/jobs/{jobId}", response_model=QueueJob, responses={404: {"model": NoLeakNotFoundError}})
def get_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    queue: Annotated[JobQueue, Depends(get_job_queue)],
    tenant_router: Annotated[TenantRouter, Depends(get_tenant_router)],
) -> QueueJob:
    record = queue.status(job_id)
    if record is None:
        raise not_found()
    if record.project_id is not None:
        # Jobs of projects the caller cannot open look like unknown jobs.
        try:
            tenant_router.resolve_database(principal, record.project_id)
        except ApiError as exc:
            raise not_found() from exc
    return _to_queue_job(record)


@router.get("/status", response_model=QueueStatus, responses={403: {"model": ErrorResponse}})
async def get_queue_status(
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    queue: Annotated[JobQueue, Depends(get_job_queue)],
) -> QueueStatus:
    return QueueStatus(
        metrics=QueueMetrics(**queue.metrics()),
        active_jobs=[_to_queue_job(record) for record in queue.active_jobs()],
    )


@router.post("/cleanup", response_model=QueueCleanupResponse, responses={403: {"model": ErrorResponse}})
async def cleanup_queue(
    _: Annotated[AuthPrincipal, Depends(require_admin)],
    queue: Annotated[JobQueue, Depends(get_job_queue)],
) -> QueueCleanupResponse:
    removed = queue.cleanup()
    return QueueCleanupResponse(removed=removed, metrics=QueueMetrics(**queue.metrics()))
