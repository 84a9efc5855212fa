"""Dependency wiring for routes."""

from __future__ import annotations

from collections.abc import Callable
from datetime import timedelta
import logging
from secrets import compare_digest
from typing import Annotated, TypeVar
from uuid import uuid4

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from dubtrack.adapters.auth import (
    AuthVerificationError,
    FirebaseTokenVerifier,
    MockTokenVerifier,
    TokenVerifier,
)
from dubtrack.adapters.notify import (
    LoggingNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)
from dubtrack.adapters.services import (
    AudioCleanerClient,
    ExternalServices,
    TranslationClient,
    VoiceAssignmentClient,
)
from dubtrack.adapters.storage import InMemoryObjectStorage, ObjectStorage, S3ObjectStorage
from dubtrack.core.config import Settings, get_settings
from dubtrack.core.logging_safety import safe_log_identifier
from dubtrack.errors import ApiError, forbidden
from dubtrack.repositories.memory import InMemoryStore
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.services.dialogues import DialogueReviewService
from dubtrack.services.job_queue import JobQueue, RetentionPolicy
from dubtrack.services.pipeline import PipelineOrchestrator
from dubtrack.services.projects import ProjectService
from dubtrack.services.tenant_router import TenantRouter
from dubtrack.services.uploads import UploadCoordinator

bearer_scheme = HTTPBearer(auto_error=False, scheme_name="bearerAuth")
callback_secret_scheme = APIKeyHeader(
    name="X-Callback-Secret",
    auto_error=False,
    scheme_name="internalCallbackSecret",
)
logger = logging.getLogger(__name__)

T = TypeVar("T")


def _auth_error(message: str) -> ApiError:
    return ApiError(status_code=401, code="UNAUTHORIZED", message=message)


def _request_correlation_id(request: Request) -> str:
    existing = getattr(request.state, "correlation_id", None)
    if isinstance(existing, str) and existing:
        return existing

    correlation_id = request.headers.get("X-Correlation-Id")
    if correlation_id:
        request.state.correlation_id = correlation_id
        return correlation_id

    generated = f"req-{uuid4()}"
    request.state.correlation_id = generated
    return generated


def get_request_correlation_id(request: Request) -> str:
    return _request_correlation_id(request)


def get_token_verifier(settings: Annotated[Settings, Depends(get_settings)]) -> TokenVerifier:
    """Resolve provider adapter from configuration."""
    if settings.auth_provider == "firebase":
        return FirebaseTokenVerifier(
            project_id=settings.firebase_project_id,
            audience=settings.firebase_audience,
        )
    return MockTokenVerifier()


async def get_authenticated_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
) -> AuthPrincipal:
    """Validate bearer token and attach normalized principal to request context."""
    correlation_id = _request_correlation_id(request)
    safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        logger.warning(
            "auth.rejected correlation_id=%s method=%s path=%s reason=invalid_or_missing_bearer",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid or missing bearer token")

    try:
        principal = verifier.verify_token(credentials.credentials)
    except AuthVerificationError as exc:
        logger.warning(
            "auth.rejected correlation_id=%s method=%s path=%s reason=token_verification_failed",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error(str(exc) or "Invalid bearer token") from exc

    safe_principal_id = safe_log_identifier(principal.user_id, prefix="pid")
    logger.info(
        "auth.accepted correlation_id=%s method=%s path=%s principal_id=%s role=%s",
        safe_correlation_id,
        request.method,
        request.url.path,
        safe_principal_id,
        principal.role,
    )
    request.state.auth_principal = principal
    return principal


def require_admin(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
) -> AuthPrincipal:
    if not principal.is_admin:
        raise forbidden("Admin role required")
    return principal


async def require_callback_secret(
    request: Request,
    callback_secret: Annotated[str | None, Security(callback_secret_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Validate callback secret for internal endpoints."""
    correlation_id = _request_correlation_id(request)
    safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")
    if callback_secret is None or not compare_digest(callback_secret, settings.callback_secret):
        logger.warning(
            "callback.auth_rejected correlation_id=%s method=%s path=%s reason=invalid_callback_secret",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid callback authentication")


def _app_component(request: Request, name: str, factory: Callable[[], T]) -> T:
    """Build a long-lived component once per app and keep it on ``app.state``."""
    state = request.app.state
    component = getattr(state, name, None)
    if component is not None:
        return component
    with state.components_lock:
        component = getattr(state, name, None)
        if component is None:
            component = factory()
            setattr(state, name, component)
            logger.info("app.component_ready name=%s type=%s", name, type(component).__name__)
    return component


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_tenant_router(request: Request) -> TenantRouter:
    return request.app.state.tenant_router


def get_object_storage(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> ObjectStorage:
    def build() -> ObjectStorage:
        if settings.storage_provider == "s3":
            return S3ObjectStorage(
                bucket=settings.s3_bucket,
                endpoint_url=settings.s3_endpoint_url,
                access_key_id=settings.s3_access_key_id,
                secret_access_key=settings.s3_secret_access_key,
                region=settings.s3_region,
            )
        return InMemoryObjectStorage()

    return _app_component(request, "object_storage", build)


def get_service_clients(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> ExternalServices:
    def build() -> ExternalServices:
        return ExternalServices(
            audio_cleaner=AudioCleanerClient(
                settings.audio_cleaner_url,
                timeout=settings.audio_cleaner_timeout_seconds,
            ),
            translation=TranslationClient(
                settings.translation_service_url,
                timeout=settings.translation_timeout_seconds,
            ),
            voice_assignment=VoiceAssignmentClient(
                settings.voice_assignment_service_url,
                timeout=settings.voice_assignment_timeout_seconds,
            ),
        )

    return _app_component(request, "service_clients", build)


def get_notification_sink(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
) -> NotificationSink:
    def build() -> NotificationSink:
        if settings.notification_webhook_url:
            return WebhookNotificationSink(
                settings.notification_webhook_url,
                timeout=settings.notification_timeout_seconds,
            )
        return LoggingNotificationSink()

    return _app_component(request, "notification_sink", build)


def get_job_queue(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    sink: Annotated[NotificationSink, Depends(get_notification_sink)],
) -> JobQueue:
    def build() -> JobQueue:
        return JobQueue(
            max_attempts=settings.job_max_attempts,
            backoff_seconds=settings.job_backoff_seconds,
            workers=settings.job_workers,
            retention=RetentionPolicy(
                completed_age=timedelta(seconds=settings.job_completed_retention_seconds),
                completed_count=settings.job_completed_retention_count,
                failed_age=timedelta(seconds=settings.job_failed_retention_seconds),
            ),
            sink=sink,
        )

    return _app_component(request, "job_queue", build)


def get_upload_coordinator(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    storage: Annotated[ObjectStorage, Depends(get_object_storage)],
    sink: Annotated[NotificationSink, Depends(get_notification_sink)],
) -> UploadCoordinator:
    def build() -> UploadCoordinator:
        return UploadCoordinator(
            storage,
            chunk_size=settings.upload_chunk_size,
            max_workers=settings.upload_concurrency,
            max_file_size=settings.upload_max_file_size,
            part_attempts=settings.upload_part_attempts,
            part_backoff_seconds=settings.upload_part_backoff_seconds,
            sink=sink,
        )

    return _app_component(request, "upload_coordinator", build)


def get_pipeline(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[InMemoryStore, Depends(get_store)],
    tenant_router: Annotated[TenantRouter, Depends(get_tenant_router)],
    job_queue: Annotated[JobQueue, Depends(get_job_queue)],
    services: Annotated[ExternalServices, Depends(get_service_clients)],
    sink: Annotated[NotificationSink, Depends(get_notification_sink)],
) -> PipelineOrchestrator:
    def build() -> PipelineOrchestrator:
        pipeline = PipelineOrchestrator(
            store=store,
            tenant_router=tenant_router,
            job_queue=job_queue,
            services=services,
            sink=sink,
            reset_after_finalize=settings.pipeline_reset_after_finalize,
        )
        pipeline.register_jobs()
        return pipeline

    return _app_component(request, "pipeline", build)


def get_project_service(
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[InMemoryStore, Depends(get_store)],
    tenant_router: Annotated[TenantRouter, Depends(get_tenant_router)],
    uploads: Annotated[UploadCoordinator, Depends(get_upload_coordinator)],
    sink: Annotated[NotificationSink, Depends(get_notification_sink)],
) -> ProjectService:
    return ProjectService(
        store,
        tenant_router,
        uploads,
        sink,
        max_file_size=settings.upload_max_file_size,
        max_batch_size=settings.upload_max_batch_size,
    )


def get_dialogue_service(
    store: Annotated[InMemoryStore, Depends(get_store)],
    tenant_router: Annotated[TenantRouter, Depends(get_tenant_router)],
    sink: Annotated[NotificationSink, Depends(get_notification_sink)],
) -> DialogueReviewService:
    return DialogueReviewService(store, tenant_router, sink)
