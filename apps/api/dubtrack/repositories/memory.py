"""In-memory repositories: the project catalogue plus one logical database per tenant."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
import threading
from typing import Any
from uuid import uuid4

from dubtrack.domain.pipeline_fsm import ensure_step_transition
from dubtrack.errors import ApiError
from dubtrack.schemas.episode import PIPELINE_STEPS, EpisodeStatus, StepStatus
from dubtrack.schemas.project import ProjectStatus

DialoguePatch = Mapping[str, Any]


@dataclass(slots=True)
class AssignmentRecord:
    username: str
    role: str


@dataclass(slots=True)
class StepRecord:
    status: StepStatus = StepStatus.PENDING
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    job_id: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None


def _fresh_steps() -> dict[int, StepRecord]:
    return {number: StepRecord() for number in PIPELINE_STEPS}


@dataclass(slots=True)
class EpisodeRecord:
    id: str
    project_id: str
    number: int
    name: str
    collection_name: str
    video_key: str
    uploaded_at: datetime
    updated_at: datetime
    status: EpisodeStatus = EpisodeStatus.UPLOADED
    step: int = 1
    steps: dict[int, StepRecord] = field(default_factory=_fresh_steps)
    error: str | None = None

    def step_statuses(self) -> dict[int, StepStatus]:
        return {number: record.status for number, record in self.steps.items()}


@dataclass(slots=True)
class ProjectRecord:
    id: str
    index: int
    title: str
    slug: str
    database_name: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    description: str | None = None
    source_language: str | None = None
    target_language: str | None = None
    status: ProjectStatus = ProjectStatus.INITIALIZING
    episodes: list[EpisodeRecord] = field(default_factory=list)
    assignments: list[AssignmentRecord] = field(default_factory=list)
    object_keys: list[str] = field(default_factory=list)
    next_episode_number: int = 1

    def roles_for(self, username: str) -> set[str]:
        return {assignment.role for assignment in self.assignments if assignment.username == username}


@dataclass(slots=True)
class TenantCollection:
    """Scene documents of one episode; each holds a ``dialogues`` array."""

    name: str
    documents: list[dict[str, Any]] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass(slots=True)
class TenantDatabase:
    name: str
    collections: dict[str, TenantCollection] = field(default_factory=dict)


def _apply_patch(target: dict[str, Any], patch: DialoguePatch) -> None:
    """Set dotted-path fields (``text.translated``) without touching siblings."""
    for path, value in patch.items():
        node = target
        *parents, leaf = path.split(".")
        for key in parents:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[leaf] = value


@dataclass(slots=True)
class InMemoryStore:
    """Simple, deterministic persistence layer for the API and tests."""

    projects: dict[str, ProjectRecord] = field(default_factory=dict)
    databases: dict[str, TenantDatabase] = field(default_factory=dict)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    # Project indexes and episode numbers feed dialogue numbers, so neither is ever handed out twice.
    next_project_index: int = 1
    project_write_count: int = 0
    episode_write_count: int = 0
    episode_write_failure_message: str | None = None

    # Catalogue

    def create_project(
        self,
        *,
        title: str,
        slug: str,
        database_name: str,
        created_by: str,
        description: str | None = None,
        source_language: str | None = None,
        target_language: str | None = None,
    ) -> ProjectRecord:
        with self.lock:
            if any(record.database_name == database_name for record in self.projects.values()):
                raise ApiError(
                    status_code=409,
                    code="CONFLICT",
                    message="Project already exists",
                    details={"database_name": database_name},
                )

            now = datetime.now(UTC)
            project = ProjectRecord(
                id=str(uuid4()),
                index=self.next_project_index,
                title=title,
                slug=slug,
                database_name=database_name,
                created_by=created_by,
                created_at=now,
                updated_at=now,
                description=description,
                source_language=source_language,
                target_language=target_language,
            )
            self.projects[project.id] = project
            self.next_project_index += 1
            self.project_write_count += 1
            return project

    def get_project(self, project_id: str) -> ProjectRecord | None:
        return self.projects.get(project_id)

    def get_project_by_index(self, index: int) -> ProjectRecord | None:
        for record in self.projects.values():
            if record.index == index:
                return record
        return None

    def list_projects(self) -> list[ProjectRecord]:
        projects = list(self.projects.values())
        projects.sort(key=lambda record: record.index)
        return projects

    def list_projects_for_user(self, username: str) -> list[ProjectRecord]:
        return [record for record in self.list_projects() if record.roles_for(username)]

    def find_episode(self, episode_id: str) -> tuple[ProjectRecord, EpisodeRecord] | None:
        for project in self.projects.values():
            for episode in project.episodes:
                if episode.id == episode_id:
                    return project, episode
        return None

    def set_assignments(self, *, project: ProjectRecord, assignments: list[AssignmentRecord]) -> None:
        with self.lock:
            project.assignments = list(assignments)
            project.updated_at = datetime.now(UTC)
            self.project_write_count += 1

    def set_project_status(self, *, project: ProjectRecord, status: ProjectStatus) -> None:
        with self.lock:
            project.status = status
            project.updated_at = datetime.now(UTC)
            self.project_write_count += 1

    def reserve_episode_numbers(self, *, project: ProjectRecord, count: int) -> list[int]:
        """Hand out the next ``count`` episode numbers; numbers of deleted episodes are not reused."""
        with self.lock:
            first = project.next_episode_number
            project.next_episode_number += count
            return list(range(first, first + count))

    def attach_episodes(
        self,
        *,
        project: ProjectRecord,
        episodes: list[EpisodeRecord],
        object_keys: list[str],
    ) -> None:
        """Append episodes and their stored objects as one all-or-nothing write."""
        with self.lock:
            previous_episodes = list(project.episodes)
            previous_object_keys = list(project.object_keys)
            previous_status = project.status
            previous_next_number = project.next_episode_number
            previous_updated_at = project.updated_at
            previous_write_count = self.episode_write_count

            try:
                taken = {episode.collection_name for episode in project.episodes}
                for episode in episodes:
                    if episode.collection_name in taken:
                        raise ApiError(
                            status_code=409,
                            code="CONFLICT",
                            message="Episode collection already exists",
                            details={"collection_name": episode.collection_name},
                        )
                    taken.add(episode.collection_name)
                    project.episodes.append(episode)
                    self.episode_write_count += 1
                    self._maybe_raise_episode_write_failure()

                project.next_episode_number = max(
                    [project.next_episode_number, *(episode.number + 1 for episode in episodes)]
                )
                project.object_keys.extend(key for key in object_keys if key not in project.object_keys)
                if project.status is ProjectStatus.INITIALIZING:
                    project.status = ProjectStatus.PENDING
                project.updated_at = datetime.now(UTC)
            except Exception:
                project.episodes = previous_episodes
                project.object_keys = previous_object_keys
                project.status = previous_status
                project.next_episode_number = previous_next_number
                project.updated_at = previous_updated_at
                self.episode_write_count = previous_write_count
                raise

    def remove_episode(self, *, project: ProjectRecord, episode: EpisodeRecord) -> None:
        """Remove the episode entry and its collection together or not at all."""
        with self.lock:
            previous_episodes = list(project.episodes)
            previous_object_keys = list(project.object_keys)
            previous_updated_at = project.updated_at
            previous_write_count = self.episode_write_count
            database = self.databases.get(project.database_name)
            dropped_collection = None

            try:
                project.episodes = [item for item in project.episodes if item.id != episode.id]
                project.object_keys = [key for key in project.object_keys if key != episode.video_key]
                self.episode_write_count += 1
                if database is not None:
                    dropped_collection = database.collections.pop(episode.collection_name, None)
                self._maybe_raise_episode_write_failure()
                project.updated_at = datetime.now(UTC)
            except Exception:
                project.episodes = previous_episodes
                project.object_keys = previous_object_keys
                project.updated_at = previous_updated_at
                self.episode_write_count = previous_write_count
                if database is not None and dropped_collection is not None:
                    database.collections[dropped_collection.name] = dropped_collection
                raise

    def delete_project(self, project_id: str) -> ProjectRecord | None:
        with self.lock:
            project = self.projects.pop(project_id, None)
            if project is not None:
                self.project_write_count += 1
            return project

    def _maybe_raise_episode_write_failure(self) -> None:
        if self.episode_write_failure_message is None:
            return
        message = self.episode_write_failure_message
        self.episode_write_failure_message = None
        raise RuntimeError(message)

    # Pipeline steps

    def transition_step(
        self,
        *,
        episode: EpisodeRecord,
        step: int,
        new_status: StepStatus,
        inputs: dict[str, Any] | None = None,
        outputs: dict[str, Any] | None = None,
        error: str | None = None,
        job_id: str | None = None,
    ) -> StepRecord:
        """Apply an FSM-validated step mutation with consistent write bookkeeping."""
        with self.lock:
            ensure_step_transition(episode.step_statuses(), step, new_status)
            now = datetime.now(UTC)
            record = episode.steps[step]
            record.status = new_status
            record.updated_at = now
            if new_status is StepStatus.PROCESSING:
                record.started_at = now
                record.error = None
                record.job_id = job_id
                if inputs is not None:
                    record.inputs = dict(inputs)
            if outputs is not None:
                record.outputs = dict(outputs)
            if new_status is StepStatus.ERROR:
                record.error = error
            if new_status is StepStatus.PENDING:
                record.error = None
                record.job_id = None
            episode.updated_at = now
            self.episode_write_count += 1
            return record

    # Tenant databases

    def ensure_database(self, name: str) -> TenantDatabase:
        with self.lock:
            database = self.databases.get(name)
            if database is None:
                database = TenantDatabase(name=name)
                self.databases[name] = database
            return database

    def ensure_collection(self, database_name: str, collection_name: str) -> TenantCollection:
        with self.lock:
            database = self.ensure_database(database_name)
            collection = database.collections.get(collection_name)
            if collection is None:
                collection = TenantCollection(name=collection_name)
                database.collections[collection_name] = collection
            return collection

    def drop_database(self, name: str) -> bool:
        with self.lock:
            return self.databases.pop(name, None) is not None

    # Dialogue documents

    def upsert_scene(self, collection: TenantCollection, scene: dict[str, Any]) -> None:
        """Replace the scene document with the same ``scene_number`` or append a new one."""
        document = copy.deepcopy(scene)
        with collection.lock:
            for position, existing in enumerate(collection.documents):
                if existing.get("scene_number") == document["scene_number"]:
                    document.setdefault("created_at", existing.get("created_at"))
                    collection.documents[position] = document
                    return
            collection.documents.append(document)

    def list_scenes(self, collection: TenantCollection) -> list[dict[str, Any]]:
        with collection.lock:
            scenes = copy.deepcopy(collection.documents)
        scenes.sort(key=lambda scene: scene["scene_number"])
        return scenes

    def list_dialogues(self, collection: TenantCollection) -> list[dict[str, Any]]:
        dialogues = [dialogue for scene in self.list_scenes(collection) for dialogue in scene.get("dialogues", [])]
        dialogues.sort(key=lambda dialogue: (dialogue["scene_number"], dialogue["line_number"]))
        return dialogues

    def find_dialogue(self, collection: TenantCollection, dialogue_number: str) -> dict[str, Any] | None:
        with collection.lock:
            for scene in collection.documents:
                for dialogue in scene.get("dialogues", []):
                    if dialogue.get("dialogue_number") == dialogue_number:
                        return copy.deepcopy(dialogue)
        return None

    def update_dialogue_by_number(
        self,
        collection: TenantCollection,
        dialogue_number: str,
        patch: DialoguePatch | Callable[[Mapping[str, Any]], DialoguePatch],
        *,
        updated_by: str,
    ) -> dict[str, Any] | None:
        """Patch the named fields of one dialogue in place.

        ``patch`` is either a mapping of dotted field paths or a callable that
        receives the current dialogue and returns that mapping; the callable runs
        under the collection lock so checks against the current state and the
        write are one step. Fields not named in the patch are left untouched.
        Returns a copy of the updated dialogue or ``None`` when no dialogue matches.
        """
        with collection.lock:
            for scene in collection.documents:
                for dialogue in scene.get("dialogues", []):
                    if dialogue.get("dialogue_number") != dialogue_number:
                        continue
                    changes = patch(copy.deepcopy(dialogue)) if callable(patch) else patch
                    now = datetime.now(UTC)
                    _apply_patch(dialogue, changes)
                    dialogue["updated_at"] = now
                    dialogue["updated_by"] = updated_by
                    scene["updated_at"] = now
                    return copy.deepcopy(dialogue)
        return None

    def update_dialogues_where(
        self,
        collection: TenantCollection,
        predicate: Callable[[Mapping[str, Any]], bool],
        patch: Callable[[Mapping[str, Any]], DialoguePatch],
        *,
        updated_by: str,
    ) -> int:
        updated = 0
        with collection.lock:
            now = datetime.now(UTC)
            for scene in collection.documents:
                for dialogue in scene.get("dialogues", []):
                    if not predicate(dialogue):
                        continue
                    changes = patch(copy.deepcopy(dialogue))
                    if not changes:
                        continue
                    _apply_patch(dialogue, changes)
                    dialogue["updated_at"] = now
                    dialogue["updated_by"] = updated_by
                    scene["updated_at"] = now
                    updated += 1
        return updated
