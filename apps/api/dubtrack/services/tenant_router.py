"""Tenant routing: project -> logical database -> episode collection.

This module is the only place database and collection names are built; every
read or write of dialogue data goes through ``resolve_database`` and
``resolve_collection`` first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
import threading

from dubtrack.core.logging_safety import safe_log_identifier
from dubtrack.errors import forbidden, invalid_format, invalid_input, not_found
from dubtrack.repositories.memory import (
    EpisodeRecord,
    InMemoryStore,
    ProjectRecord,
    TenantCollection,
    TenantDatabase,
)
from dubtrack.schemas.auth import ADMIN_ROLE, AuthPrincipal

logger = logging.getLogger(__name__)

_SLUG_INVALID_CHARS = re.compile(r"[^a-z0-9]")
_EPISODE_SUFFIX = re.compile(r"_Ep_(\d+)$")


def slugify(title: str) -> str:
    slug = _SLUG_INVALID_CHARS.sub("_", title.strip().lower())
    if not slug.strip("_"):
        raise invalid_input("Project title must contain at least one letter or digit", details={"title": title})
    return slug


def database_name_for(title: str) -> str:
    return f"{slugify(title)}_db"


def collection_name_for(slug: str, episode_number: int) -> str:
    return f"{slug}_Ep_{episode_number:02d}"


def episode_number_from_collection(collection_name: str) -> int | None:
    match = _EPISODE_SUFFIX.search(collection_name)
    if match is None:
        return None
    return int(match.group(1))


@dataclass(frozen=True, slots=True)
class DatabaseHandle:
    project_id: str
    name: str
    database: TenantDatabase = field(repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class CollectionHandle:
    project_id: str
    database_name: str
    name: str
    episode_number: int
    collection: TenantCollection = field(repr=False, compare=False)


class TenantRouter:
    """Resolves tenant handles and caches them across requests."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self._databases: dict[str, DatabaseHandle] = {}
        self._collections: dict[tuple[str, str], CollectionHandle] = {}
        self._lock = threading.Lock()

    def get_project(self, project_id: str) -> ProjectRecord:
        project = self._store.get_project(project_id)
        if project is None:
            raise not_found()
        return project

    def get_project_by_index(self, index: int) -> ProjectRecord:
        project = self._store.get_project_by_index(index)
        if project is None:
            raise not_found()
        return project

    @staticmethod
    def project_roles(principal: AuthPrincipal, project: ProjectRecord) -> set[str]:
        if principal.is_admin:
            return {ADMIN_ROLE}
        return project.roles_for(principal.user_id)

    def authorize(self, principal: AuthPrincipal, project: ProjectRecord) -> set[str]:
        """Return the caller's roles on the project or reject an unassigned caller."""
        roles = self.project_roles(principal, project)
        if not roles:
            logger.warning(
                "tenant.rejected project_id=%s principal_id=%s role=%s reason=not_assigned",
                project.id,
                safe_log_identifier(principal.user_id, prefix="pid"),
                principal.role,
            )
            raise forbidden("Not assigned to this project")
        return roles

    def resolve_database(self, principal: AuthPrincipal, project_id: str) -> DatabaseHandle:
        project = self.get_project(project_id)
        self.authorize(principal, project)
        return self.database_for(project)

    def database_for(self, project: ProjectRecord) -> DatabaseHandle:
        with self._lock:
            handle = self._databases.get(project.database_name)
            if handle is None:
                handle = DatabaseHandle(
                    project_id=project.id,
                    name=project.database_name,
                    database=self._store.ensure_database(project.database_name),
                )
                self._databases[project.database_name] = handle
                logger.info("tenant.database_ready project_id=%s database=%s", project.id, project.database_name)
            return handle

    def resolve_collection(self, project: ProjectRecord, episode: EpisodeRecord) -> CollectionHandle:
        expected = collection_name_for(project.slug, episode.number)
        if episode.collection_name != expected or episode_number_from_collection(episode.collection_name) is None:
            raise invalid_format(
                "Episode collection name does not match the project naming pattern",
                details={"collection_name": episode.collection_name, "expected": expected},
            )

        key = (project.database_name, episode.collection_name)
        with self._lock:
            handle = self._collections.get(key)
            if handle is None:
                handle = CollectionHandle(
                    project_id=project.id,
                    database_name=project.database_name,
                    name=episode.collection_name,
                    episode_number=episode.number,
                    collection=self._store.ensure_collection(project.database_name, episode.collection_name),
                )
                self._collections[key] = handle
            return handle

    def resolve_episode(self, project: ProjectRecord, episode_number: int) -> EpisodeRecord:
        """Find the episode whose collection suffix equals the zero-padded number."""
        suffix = f"_Ep_{episode_number:02d}"
        for episode in project.episodes:
            if episode.collection_name.endswith(suffix):
                return episode
        raise not_found()

    def resolve_episode_collection(
        self, project: ProjectRecord, episode_number: int
    ) -> tuple[EpisodeRecord, CollectionHandle]:
        episode = self.resolve_episode(project, episode_number)
        return episode, self.resolve_collection(project, episode)

    def drop_database(self, project: ProjectRecord) -> bool:
        """Drop the tenant database; a database that never existed is not an error."""
        self.evict_project(project)
        dropped = self._store.drop_database(project.database_name)
        logger.info(
            "tenant.database_dropped project_id=%s database=%s existed=%s",
            project.id,
            project.database_name,
            dropped,
        )
        return dropped

    def evict_project(self, project: ProjectRecord) -> None:
        with self._lock:
            self._databases.pop(project.database_name, None)
            for key in [key for key in self._collections if key[0] == project.database_name]:
                del self._collections[key]

    def evict_collection(self, project: ProjectRecord, collection_name: str) -> None:
        with self._lock:
            self._collections.pop((project.database_name, collection_name), None)
