"""Project service layer."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from pathlib import PurePosixPath
from typing import BinaryIO
from uuid import uuid4

from dubtrack.adapters.notify import NotificationSink, publish_safely
from dubtrack.adapters.storage import ObjectStorageError
from dubtrack.core.logging_safety import safe_log_identifier
from dubtrack.errors import ApiError, forbidden, invalid_input, not_found
from dubtrack.repositories.memory import AssignmentRecord, EpisodeRecord, InMemoryStore, ProjectRecord
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.dialogue import DialogueStatus
from dubtrack.schemas.project import (
    Assignment,
    DeleteEpisodeResponse,
    DeleteProjectResponse,
    FailedObjectDeletion,
    FileUploadResult,
    Project,
    ProjectProgress,
    ProjectStatus,
)
from dubtrack.services.pipeline import to_episode_summary
from dubtrack.services.tenant_router import TenantRouter, collection_name_for, database_name_for, slugify
from dubtrack.services.uploads import FileUploadOutcome, UploadCoordinator, UploadSource, ensure_video_content_type

logger = logging.getLogger(__name__)


def _percent(count: int, total: int) -> int:
    """Whole percent rounded half up; an empty project is at 0."""
    if total == 0:
        return 0
    return (count * 200 + total) // (2 * total)


@dataclass(slots=True)
class VideoFile:
    file_name: str
    content_type: str | None
    stream: BinaryIO
    size: int | None = None


@dataclass(slots=True)
class ProjectUploadResult:
    project: Project
    files: list[FileUploadResult]


class ProjectService:
    def __init__(
        self,
        store: InMemoryStore,
        tenant_router: TenantRouter,
        uploads: UploadCoordinator,
        sink: NotificationSink | None = None,
        *,
        max_file_size: int | None = None,
        max_batch_size: int | None = None,
    ) -> None:
        self._store = store
        self._router = tenant_router
        self._uploads = uploads
        self._sink = sink
        self._max_file_size = max_file_size
        self._max_batch_size = max_batch_size

    def create_project_with_videos(
        self,
        *,
        principal: AuthPrincipal,
        title: str,
        videos: Sequence[VideoFile],
        description: str | None = None,
        source_language: str | None = None,
        target_language: str | None = None,
    ) -> ProjectUploadResult:
        self._require_admin(principal)
        clean_title = title.strip()
        if not clean_title:
            raise invalid_input("Project title is required")
        slug = slugify(clean_title)
        self._validate_videos(videos)

        project = self._store.create_project(
            title=clean_title,
            slug=slug,
            database_name=database_name_for(clean_title),
            created_by=principal.user_id,
            description=description,
            source_language=source_language,
            target_language=target_language,
        )
        self._router.database_for(project)
        logger.info(
            "project.created project_id=%s index=%s database=%s principal_id=%s",
            project.id,
            project.index,
            project.database_name,
            safe_log_identifier(principal.user_id, prefix="pid"),
        )

        try:
            outcomes = self._upload_and_attach(project, videos)
        except Exception:
            self._discard_project(project)
            raise
        if not any(outcome.success for outcome in outcomes):
            self._discard_project(project)
            raise self._nothing_stored(outcomes)

        publish_safely(
            self._sink,
            "project.created",
            {"project_id": project.id, "database_name": project.database_name, "episodes": len(project.episodes)},
        )
        return ProjectUploadResult(project=self._to_project(project), files=self._to_results(outcomes))

    def add_episodes(
        self,
        *,
        principal: AuthPrincipal,
        project_id: str,
        videos: Sequence[VideoFile],
    ) -> ProjectUploadResult:
        self._require_admin(principal)
        project = self._router.get_project(project_id)
        self._validate_videos(videos)

        outcomes = self._upload_and_attach(project, videos)
        if not any(outcome.success for outcome in outcomes):
            raise self._nothing_stored(outcomes)
        return ProjectUploadResult(project=self._to_project(project), files=self._to_results(outcomes))

    def list_projects(self, *, principal: AuthPrincipal) -> list[Project]:
        if principal.is_admin:
            records = self._store.list_projects()
        else:
            records = self._store.list_projects_for_user(principal.user_id)
        return [self._to_project(record) for record in records]

    def get_project(self, *, principal: AuthPrincipal, project_id: str) -> Project:
        project = self._router.get_project(project_id)
        self._router.authorize(principal, project)
        return self._to_project(project)

    def get_progress(self, *, principal: AuthPrincipal, project_id: str) -> ProjectProgress:
        """Aggregate dialogue progress over every episode collection of the project."""
        self._require_admin(principal)
        self._router.resolve_database(principal, project_id)
        project = self._router.get_project(project_id)

        dialogues = []
        for episode in project.episodes:
            handle = self._router.resolve_collection(project, episode)
            dialogues.extend(self._store.list_dialogues(handle.collection))

        total = len(dialogues)
        return ProjectProgress(
            project_id=project.id,
            transcribed=_percent(sum(1 for item in dialogues if item.get("text", {}).get("original")), total),
            translated=_percent(sum(1 for item in dialogues if item.get("text", {}).get("translated")), total),
            voice_over=_percent(sum(1 for item in dialogues if item.get("voice_over_url")), total),
            approved=_percent(sum(1 for item in dialogues if item["status"] == DialogueStatus.APPROVED.value), total),
            total=total,
            last_updated=project.updated_at,
        )

    def assign_users(self, *, principal: AuthPrincipal, project_id: str, assignments: list[Assignment]) -> Project:
        self._require_admin(principal)
        project = self._router.get_project(project_id)
        unique: dict[tuple[str, str], AssignmentRecord] = {}
        for item in assignments:
            unique.setdefault((item.username, item.role), AssignmentRecord(username=item.username, role=item.role))
        self._store.set_assignments(project=project, assignments=list(unique.values()))
        logger.info("project.assigned project_id=%s assignments=%s", project.id, len(unique))
        return self._to_project(project)

    def update_status(self, *, principal: AuthPrincipal, project_id: str, status: ProjectStatus) -> Project:
        self._require_admin(principal)
        project = self._router.get_project(project_id)
        self._store.set_project_status(project=project, status=status)
        return self._to_project(project)

    def delete_project(self, *, principal: AuthPrincipal, project_id: str) -> DeleteProjectResponse:
        """Drop the tenant database, delete stored objects one by one and remove the record."""
        self._require_admin(principal)
        project = self._router.get_project(project_id)

        self._router.drop_database(project)
        keys = list(dict.fromkeys([*project.object_keys, *(episode.video_key for episode in project.episodes)]))
        deleted, failed = self._delete_objects(keys)
        self._store.delete_project(project.id)

        logger.info(
            "project.deleted project_id=%s database=%s deleted_objects=%s failed_objects=%s",
            project.id,
            project.database_name,
            len(deleted),
            len(failed),
        )
        publish_safely(
            self._sink,
            "project.deleted",
            {"project_id": project.id, "database_name": project.database_name, "failed_objects": len(failed)},
        )
        return DeleteProjectResponse(
            project_id=project.id,
            database_name=project.database_name,
            deleted_objects=deleted,
            failed_objects=failed,
        )

    def delete_episode(self, *, principal: AuthPrincipal, project_id: str, episode_id: str) -> DeleteEpisodeResponse:
        self._require_admin(principal)
        project = self._router.get_project(project_id)
        episode = next((item for item in project.episodes if item.id == episode_id), None)
        if episode is None:
            raise not_found()

        self._store.remove_episode(project=project, episode=episode)
        self._router.evict_collection(project, episode.collection_name)
        deleted, _ = self._delete_objects([episode.video_key])
        logger.info("episode.deleted project_id=%s episode_id=%s collection=%s", project.id, episode.id, episode.collection_name)
        return DeleteEpisodeResponse(
            project_id=project.id,
            episode_id=episode.id,
            collection_name=episode.collection_name,
            video_deleted=bool(deleted),
        )

    def _upload_and_attach(
        self,
        project: ProjectRecord,
        videos: Sequence[VideoFile],
    ) -> list[FileUploadOutcome]:
        numbers = self._store.reserve_episode_numbers(project=project, count=len(videos))
        sources = []
        for number, video in zip(numbers, videos):
            collection_name = collection_name_for(project.slug, number)
            file_name = PurePosixPath(video.file_name).name
            sources.append(
                UploadSource(
                    file_name=file_name,
                    content_type=video.content_type or "",
                    stream=video.stream,
                    object_key=f"{project.slug}/{collection_name}/{file_name}",
                )
            )

        outcomes = self._uploads.upload_files(sources)

        now = datetime.now(UTC)
        episodes = [
            EpisodeRecord(
                id=str(uuid4()),
                project_id=project.id,
                number=number,
                name=outcome.file_name,
                collection_name=collection_name_for(project.slug, number),
                video_key=outcome.object_key,
                uploaded_at=now,
                updated_at=now,
            )
            for number, outcome in zip(numbers, outcomes)
            if outcome.success
        ]
        stored_keys = [episode.video_key for episode in episodes]
        try:
            self._store.attach_episodes(project=project, episodes=episodes, object_keys=stored_keys)
        except Exception:
            self._delete_objects(stored_keys)
            raise

        for episode in episodes:
            self._router.resolve_collection(project, episode)
        logger.info(
            "project.episodes_attached project_id=%s attached=%s failed=%s",
            project.id,
            len(episodes),
            len(outcomes) - len(episodes),
        )
        return outcomes

    def _validate_videos(self, videos: Sequence[VideoFile]) -> None:
        if not videos:
            raise invalid_input("At least one video file is required")
        total = 0
        for video in videos:
            name = PurePosixPath(video.file_name or "").name
            if not name:
                raise invalid_input("Every video needs a file name")
            ensure_video_content_type(name, video.content_type)
            if video.size is None:
                continue
            if self._max_file_size is not None and video.size > self._max_file_size:
                raise invalid_input(
                    "Video exceeds the per-file size limit",
                    details={"file_name": name, "size": video.size, "max_file_size": self._max_file_size},
                )
            total += video.size
        if self._max_batch_size is not None and total > self._max_batch_size:
            raise invalid_input(
                "Videos exceed the per-request size limit",
                details={"total_size": total, "max_batch_size": self._max_batch_size},
            )

    def _delete_objects(self, keys: Sequence[str]) -> tuple[list[str], list[FailedObjectDeletion]]:
        deleted: list[str] = []
        failed: list[FailedObjectDeletion] = []
        for key in keys:
            try:
                self._uploads.storage.delete_object(key)
            except ObjectStorageError as exc:
                logger.warning("storage.delete_failed object_key=%s reason=%s", key, type(exc).__name__)
                failed.append(FailedObjectDeletion(object_key=key, error=str(exc)))
            else:
                deleted.append(key)
        return deleted, failed

    def _discard_project(self, project: ProjectRecord) -> None:
        self._router.drop_database(project)
        self._store.delete_project(project.id)
        logger.warning("project.discarded project_id=%s database=%s", project.id, project.database_name)

    @staticmethod
    def _nothing_stored(outcomes: list[FileUploadOutcome]) -> ApiError:
        return ApiError(
            status_code=503,
            code="STORAGE_UNAVAILABLE",
            message="No video could be stored",
            details={"files": [{"file_name": item.file_name, "error": item.error} for item in outcomes]},
        )

    @staticmethod
    def _require_admin(principal: AuthPrincipal) -> None:
        if not principal.is_admin:
            raise forbidden("Admin role required")

    @staticmethod
    def _to_results(outcomes: list[FileUploadOutcome]) -> list[FileUploadResult]:
        return [
            FileUploadResult(
                file_name=outcome.file_name,
                object_key=outcome.object_key if outcome.success else None,
                success=outcome.success,
                size=outcome.size,
                error=outcome.error,
            )
            for outcome in outcomes
        ]

    @staticmethod
    def _to_project(record: ProjectRecord) -> Project:
        return Project(
            id=record.id,
            index=record.index,
            title=record.title,
            description=record.description,
            slug=record.slug,
            database_name=record.database_name,
            source_language=record.source_language,
            target_language=record.target_language,
            status=record.status,
            episodes=[to_episode_summary(episode) for episode in record.episodes],
            assignments=[Assignment(username=item.username, role=item.role) for item in record.assignments],
            created_by=record.created_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
