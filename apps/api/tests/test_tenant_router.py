"""Tenant naming, resolution and authorization tests."""

from __future__ import annotations

from datetime import UTC, datetime
import unittest

from dubtrack.errors import ApiError
from dubtrack.repositories.memory import AssignmentRecord, EpisodeRecord, InMemoryStore
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.services.tenant_router import (
    TenantRouter,
    collection_name_for,
    database_name_for,
    episode_number_from_collection,
    slugify,
)


def _episode(project_id: str, slug: str, number: int, collection_name: str | None = None) -> EpisodeRecord:
    now = datetime.now(UTC)
    return EpisodeRecord(
        id=f"episode-{number}",
        project_id=project_id,
        number=number,
        name=f"ep{number}.mp4",
        collection_name=collection_name or collection_name_for(slug, number),
        video_key=f"{slug}/ep{number}.mp4",
        uploaded_at=now,
        updated_at=now,
    )


class TenantNamingTests(unittest.TestCase):
    def test_names_follow_project_and_episode_patterns(self) -> None:
        self.assertEqual(slugify("My Show: Season 2"), "my_show__season_2")
        self.assertEqual(database_name_for("Pilot"), "pilot_db")
        self.assertEqual(collection_name_for("pilot", 1), "pilot_Ep_01")
        self.assertEqual(collection_name_for("pilot", 12), "pilot_Ep_12")
        self.assertEqual(episode_number_from_collection("pilot_Ep_07"), 7)
        self.assertIsNone(episode_number_from_collection("pilot_episode_7"))

    def test_title_without_letters_or_digits_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as context:
            slugify("  ***  ")
        self.assertEqual(context.exception.payload.code, "INVALID_INPUT")


class TenantRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryStore()
        self.router = TenantRouter(self.store)
        self.project = self.store.create_project(
            title="Pilot",
            slug="pilot",
            database_name="pilot_db",
            created_by="admin-1",
        )
        self.store.attach_episodes(
            project=self.project,
            episodes=[_episode(self.project.id, "pilot", 1), _episode(self.project.id, "pilot", 2)],
            object_keys=[],
        )
        self.store.set_assignments(
            project=self.project,
            assignments=[AssignmentRecord(username="tina", role="translator")],
        )

    def test_admin_and_assigned_users_resolve_the_project_database(self) -> None:
        admin = AuthPrincipal(user_id="root", role="admin")
        translator = AuthPrincipal(user_id="tina")

        handle = self.router.resolve_database(admin, self.project.id)
        self.assertEqual(handle.name, "pilot_db")
        self.assertIs(self.router.resolve_database(translator, self.project.id).database, handle.database)
        self.assertEqual(self.router.project_roles(translator, self.project), {"translator"})
        self.assertEqual(self.router.project_roles(admin, self.project), {"admin"})

    def test_unassigned_user_is_rejected(self) -> None:
        with self.assertRaises(ApiError) as context:
            self.router.resolve_database(AuthPrincipal(user_id="mallory"), self.project.id)
        self.assertEqual(context.exception.status_code, 403)
        self.assertEqual(context.exception.payload.code, "UNAUTHORIZED")

    def test_missing_project_is_not_found(self) -> None:
        with self.assertRaises(ApiError) as context:
            self.router.resolve_database(AuthPrincipal(user_id="root", role="admin"), "missing")
        self.assertEqual(context.exception.status_code, 404)
        with self.assertRaises(ApiError):
            self.router.get_project_by_index(99)

    def test_episode_number_reservations_never_overlap(self) -> None:
        self.assertEqual(self.project.next_episode_number, 3)

        first = self.store.reserve_episode_numbers(project=self.project, count=2)
        second = self.store.reserve_episode_numbers(project=self.project, count=1)
        self.assertEqual((first, second), ([3, 4], [5]))

        self.store.remove_episode(project=self.project, episode=self.project.episodes[1])
        self.assertEqual(self.store.reserve_episode_numbers(project=self.project, count=1), [6])

    def test_episode_numbers_resolve_to_padded_collections(self) -> None:
        episode, handle = self.router.resolve_episode_collection(self.project, 2)
        self.assertEqual(episode.number, 2)
        self.assertEqual(handle.name, "pilot_Ep_02")
        self.assertIn("pilot_Ep_02", self.store.databases["pilot_db"].collections)

        again = self.router.resolve_collection(self.project, episode)
        self.assertIs(again.collection, handle.collection)

        with self.assertRaises(ApiError) as context:
            self.router.resolve_episode(self.project, 3)
        self.assertEqual(context.exception.status_code, 404)

    def test_collection_outside_naming_pattern_is_invalid_format(self) -> None:
        rogue = _episode(self.project.id, "pilot", 9, collection_name="pilot_episode_9")
        with self.assertRaises(ApiError) as context:
            self.router.resolve_collection(self.project, rogue)
        self.assertEqual(context.exception.status_code, 400)
        self.assertEqual(context.exception.payload.code, "INVALID_FORMAT")

    def test_drop_database_evicts_cached_handles(self) -> None:
        _, handle = self.router.resolve_episode_collection(self.project, 1)
        self.assertTrue(self.router.drop_database(self.project))
        self.assertNotIn("pilot_db", self.store.databases)

        _, fresh = self.router.resolve_episode_collection(self.project, 1)
        self.assertIsNot(fresh.collection, handle.collection)
        self.assertTrue(self.router.drop_database(self.project))
        self.assertFalse(self.router.drop_database(self.project))


class StoreTransactionTests(unittest.TestCase):
    def test_attach_failpoint_rolls_back_every_episode(self) -> None:
        store = InMemoryStore()
        project = store.create_project(title="Pilot", slug="pilot", database_name="pilot_db", created_by="root")
        store.episode_write_failure_message = "simulated write failure"

        with self.assertRaises(RuntimeError):
            store.attach_episodes(
                project=project,
                episodes=[_episode(project.id, "pilot", 1), _episode(project.id, "pilot", 2)],
                object_keys=["pilot/ep1.mp4", "pilot/ep2.mp4"],
            )

        self.assertEqual(project.episodes, [])
        self.assertEqual(project.object_keys, [])
        self.assertEqual(project.status.value, "initializing")
        self.assertEqual(store.episode_write_count, 0)

    def test_duplicate_database_name_conflicts(self) -> None:
        store = InMemoryStore()
        store.create_project(title="Pilot", slug="pilot", database_name="pilot_db", created_by="root")
        with self.assertRaises(ApiError) as context:
            store.create_project(title="pilot", slug="pilot", database_name="pilot_db", created_by="root")
        self.assertEqual(context.exception.status_code, 409)
        self.assertEqual(context.exception.payload.code, "CONFLICT")


if __name__ == "__main__":
    unittest.main()
