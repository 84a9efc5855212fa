"""Project creation, access and cascade deletion API tests."""

from __future__ import annotations

import os
import unittest

import httpx
from fastapi.testclient import TestClient

from dubtrack.adapters.notify import WebhookNotificationSink
from dubtrack.adapters.storage import InMemoryObjectStorage, ObjectStorageError, StorageUnavailableError
from dubtrack.core.config import get_settings
from dubtrack.main import create_app

ADMIN = {"Authorization": "Bearer test:root:admin"}
TRANSLATOR = {"Authorization": "Bearer test:tina"}
OUTSIDER = {"Authorization": "Bearer test:mallory"}


def _videos(*names: str, content_type: str = "video/mp4") -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("videos", (name, f"video-bytes-{name}".encode(), content_type)) for name in names]


class _UnavailableStorage(InMemoryObjectStorage):
    def create_multipart_upload(self, key: str, content_type: str) -> str:
        raise StorageUnavailableError("storage endpoint unreachable")


class _StickyDeleteStorage(InMemoryObjectStorage):
    def __init__(self, sticky_key_fragment: str) -> None:
        super().__init__()
        self._fragment = sticky_key_fragment

    def delete_object(self, key: str) -> None:
        if self._fragment in key:
            raise ObjectStorageError(f"delete refused for {key}")
        super().delete_object(key)


class _SettingsEnvCase(unittest.TestCase):
    _env_keys = (
        "DUBTRACK_AUTH_PROVIDER",
        "DUBTRACK_CALLBACK_SECRET",
        "DUBTRACK_STORAGE_PROVIDER",
        "DUBTRACK_JOB_BACKOFF_SECONDS",
        "DUBTRACK_UPLOAD_PART_BACKOFF_SECONDS",
        "DUBTRACK_NOTIFICATION_WEBHOOK_URL",
    )

    def setUp(self) -> None:
        self._old_env = {k: os.environ.get(k) for k in self._env_keys}
        os.environ["DUBTRACK_AUTH_PROVIDER"] = "mock"
        os.environ["DUBTRACK_CALLBACK_SECRET"] = "test-callback-secret"
        os.environ["DUBTRACK_STORAGE_PROVIDER"] = "memory"
        os.environ["DUBTRACK_JOB_BACKOFF_SECONDS"] = "0"
        os.environ["DUBTRACK_UPLOAD_PART_BACKOFF_SECONDS"] = "0"
        os.environ.pop("DUBTRACK_NOTIFICATION_WEBHOOK_URL", None)
        get_settings.cache_clear()

    def tearDown(self) -> None:
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()


class ProjectApiTests(_SettingsEnvCase):
    def setUp(self) -> None:
        super().setUp()
        self.app = create_app()
        self.storage = InMemoryObjectStorage()
        self.app.state.object_storage = self.storage
        self.client = TestClient(self.app)

    def _create(self, title: str, *names: str, headers: dict | None = None) -> httpx.Response:
        return self.client.post(
            "/api/v1/episodes",
            headers=headers or ADMIN,
            data={"title": title, "source_language": "en", "target_language": "es"},
            files=_videos(*names),
        )

    def test_create_project_with_videos_builds_tenant_layout(self) -> None:
        response = self._create("Pilot", "ep1.mp4", "ep2.mp4")

        self.assertEqual(response.status_code, 201)
        body = response.json()
        project = body["project"]
        self.assertEqual(project["index"], 1)
        self.assertEqual(project["database_name"], "pilot_db")
        self.assertEqual(project["status"], "pending")
        self.assertEqual([item["collection_name"] for item in project["episodes"]], ["pilot_Ep_01", "pilot_Ep_02"])
        self.assertEqual([item["step"] for item in project["episodes"]], [1, 1])
        self.assertTrue(all(item["success"] for item in body["files"]))
        self.assertEqual(self.storage.get_object("pilot/pilot_Ep_01/ep1.mp4"), b"video-bytes-ep1.mp4")
        self.assertEqual(
            sorted(self.app.state.store.databases["pilot_db"].collections),
            ["pilot_Ep_01", "pilot_Ep_02"],
        )

    def test_missing_or_invalid_bearer_token_returns_401_without_side_effects(self) -> None:
        missing = self.client.post("/api/v1/episodes", data={"title": "Pilot"}, files=_videos("ep1.mp4"))
        invalid = self._create("Pilot", "ep1.mp4", headers={"Authorization": "Bearer nope"})

        for response in (missing, invalid):
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json()["code"], "UNAUTHORIZED")
        self.assertEqual(self.app.state.store.projects, {})

    def test_non_admin_cannot_create_projects(self) -> None:
        response = self._create("Pilot", "ep1.mp4", headers=TRANSLATOR)
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "UNAUTHORIZED")
        self.assertEqual(self.storage.objects, {})

    def test_duplicate_project_conflicts_before_upload(self) -> None:
        self.assertEqual(self._create("Pilot", "ep1.mp4").status_code, 201)
        stored = dict(self.storage.objects)

        response = self._create("pilot", "other.mp4")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "CONFLICT")
        self.assertEqual(self.storage.objects, stored)

    def test_invalid_inputs_are_rejected_before_side_effects(self) -> None:
        not_video = self.client.post(
            "/api/v1/episodes",
            headers=ADMIN,
            data={"title": "Pilot"},
            files=_videos("notes.txt", content_type="text/plain"),
        )
        self.assertEqual(not_video.status_code, 400)
        self.assertEqual(not_video.json()["code"], "INVALID_INPUT")

        missing_title = self.client.post("/api/v1/episodes", headers=ADMIN, files=_videos("ep1.mp4"))
        self.assertEqual(missing_title.status_code, 400)
        self.assertEqual(missing_title.json()["code"], "INVALID_INPUT")

        symbols_only = self._create("***", "ep1.mp4")
        self.assertEqual(symbols_only.status_code, 400)

        self.assertEqual(self.app.state.store.projects, {})
        self.assertEqual(self.storage.objects, {})

    def test_add_episodes_continues_numbering(self) -> None:
        project = self._create("Pilot", "ep1.mp4").json()["project"]

        response = self.client.post(
            f"/api/v1/projects/{project['id']}/episodes",
            headers=ADMIN,
            files=_videos("ep2.mp4", "ep3.mp4"),
        )
        self.assertEqual(response.status_code, 201)
        numbers = [item["number"] for item in response.json()["project"]["episodes"]]
        self.assertEqual(numbers, [1, 2, 3])
        self.assertIn("pilot/pilot_Ep_03/ep3.mp4", self.storage.objects)

    def test_deleted_episode_numbers_are_not_reused(self) -> None:
        project = self._create("Pilot", "ep1.mp4", "ep2.mp4").json()["project"]
        second = project["episodes"][1]
        self.client.delete(f"/api/v1/projects/{project['id']}/episodes/{second['id']}", headers=ADMIN)

        response = self.client.post(
            f"/api/v1/projects/{project['id']}/episodes",
            headers=ADMIN,
            files=_videos("ep3.mp4"),
        )

        self.assertEqual(response.status_code, 201)
        episodes = response.json()["project"]["episodes"]
        self.assertEqual(
            [(item["number"], item["collection_name"]) for item in episodes],
            [(1, "pilot_Ep_01"), (3, "pilot_Ep_03")],
        )
        self.assertIn("pilot/pilot_Ep_03/ep3.mp4", self.storage.objects)
        self.assertNotIn("pilot_Ep_02", self.app.state.store.databases["pilot_db"].collections)

    def test_deleted_project_indexes_are_not_reused(self) -> None:
        alpha = self._create("Alpha", "ep1.mp4").json()["project"]
        beta = self._create("Beta", "ep1.mp4").json()["project"]
        self.client.delete(f"/api/v1/projects/{beta['id']}", headers=ADMIN)

        gamma = self._create("Gamma", "ep1.mp4").json()["project"]

        self.assertEqual((alpha["index"], beta["index"], gamma["index"]), (1, 2, 3))
        self.assertEqual(self.client.get("/api/v1/dialogues/2.01.01.001", headers=ADMIN).status_code, 404)

    def test_visibility_follows_assignments(self) -> None:
        pilot = self._create("Pilot", "ep1.mp4").json()["project"]
        other = self._create("Other", "ep1.mp4").json()["project"]

        assigned = self.client.post(
            f"/api/v1/projects/{pilot['id']}/assign",
            headers=ADMIN,
            json={"assignments": [{"username": "tina", "role": "translator"}]},
        )
        self.assertEqual(assigned.status_code, 200)
        self.assertEqual(assigned.json()["assignments"], [{"username": "tina", "role": "translator"}])

        self.assertEqual(len(self.client.get("/api/v1/projects", headers=ADMIN).json()), 2)
        visible = self.client.get("/api/v1/projects", headers=TRANSLATOR).json()
        self.assertEqual([item["id"] for item in visible], [pilot["id"]])

        self.assertEqual(self.client.get(f"/api/v1/projects/{pilot['id']}", headers=TRANSLATOR).status_code, 200)
        denied = self.client.get(f"/api/v1/projects/{other['id']}", headers=TRANSLATOR)
        self.assertEqual(denied.status_code, 403)
        missing = self.client.get("/api/v1/projects/missing", headers=TRANSLATOR)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json(), {"code": "RESOURCE_NOT_FOUND", "message": "Resource not found"})

        forbidden_assign = self.client.post(
            f"/api/v1/projects/{pilot['id']}/assign",
            headers=TRANSLATOR,
            json={"assignments": []},
        )
        self.assertEqual(forbidden_assign.status_code, 403)

    def test_status_update_is_admin_only(self) -> None:
        project = self._create("Pilot", "ep1.mp4").json()["project"]

        updated = self.client.patch(
            f"/api/v1/projects/{project['id']}/status",
            headers=ADMIN,
            json={"status": "in_progress"},
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["status"], "in_progress")

        invalid = self.client.patch(
            f"/api/v1/projects/{project['id']}/status",
            headers=ADMIN,
            json={"status": "archived"},
        )
        self.assertEqual(invalid.status_code, 400)

    def test_cascade_delete_reports_failed_objects_and_removes_project(self) -> None:
        storage = _StickyDeleteStorage("ep2")
        self.app.state.object_storage = storage
        project = self._create("Pilot", "ep1.mp4", "ep2.mp4").json()["project"]

        response = self.client.delete(f"/api/v1/projects/{project['id']}", headers=ADMIN)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["database_name"], "pilot_db")
        self.assertEqual(body["deleted_objects"], ["pilot/pilot_Ep_01/ep1.mp4"])
        self.assertEqual([item["object_key"] for item in body["failed_objects"]], ["pilot/pilot_Ep_02/ep2.mp4"])
        self.assertNotIn("pilot_db", self.app.state.store.databases)
        self.assertEqual(self.client.get(f"/api/v1/projects/{project['id']}", headers=ADMIN).status_code, 404)

        recreated = self._create("Pilot", "ep1.mp4")
        self.assertEqual(recreated.status_code, 201)

    def test_delete_episode_removes_entry_and_collection(self) -> None:
        project = self._create("Pilot", "ep1.mp4", "ep2.mp4").json()["project"]
        episode = project["episodes"][1]

        response = self.client.delete(f"/api/v1/projects/{project['id']}/episodes/{episode['id']}", headers=ADMIN)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["collection_name"], "pilot_Ep_02")
        self.assertTrue(response.json()["video_deleted"])
        self.assertNotIn("pilot_Ep_02", self.app.state.store.databases["pilot_db"].collections)
        remaining = self.client.get(f"/api/v1/projects/{project['id']}", headers=ADMIN).json()["episodes"]
        self.assertEqual([item["number"] for item in remaining], [1])

        again = self.client.delete(f"/api/v1/projects/{project['id']}/episodes/{episode['id']}", headers=ADMIN)
        self.assertEqual(again.status_code, 404)

    def test_every_upload_failing_rolls_back_project(self) -> None:
        self.app.state.object_storage = _UnavailableStorage()

        response = self._create("Pilot", "ep1.mp4", "ep2.mp4")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "STORAGE_UNAVAILABLE")
        self.assertEqual(len(response.json()["details"]["files"]), 2)
        self.assertEqual(self.app.state.store.projects, {})
        self.assertNotIn("pilot_db", self.app.state.store.databases)

    def test_episode_write_failure_rolls_back_project_and_objects(self) -> None:
        client = TestClient(self.app, raise_server_exceptions=False)
        self.app.state.store.episode_write_failure_message = "simulated episode write failure"

        response = client.post(
            "/api/v1/episodes",
            headers=ADMIN,
            data={"title": "Pilot"},
            files=_videos("ep1.mp4", "ep2.mp4"),
        )

        self.assertEqual(response.status_code, 500)
        self.assertEqual(self.app.state.store.projects, {})
        self.assertEqual(self.storage.objects, {})
        self.assertEqual(self.app.state.store.episode_write_count, 0)

    def test_webhook_failures_do_not_fail_requests(self) -> None:
        delivered: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            delivered.append(request.url.path)
            return httpx.Response(500)

        self.app.state.notification_sink = WebhookNotificationSink(
            "http://hooks.test/events",
            transport=httpx.MockTransport(handler),
        )

        response = self._create("Pilot", "ep1.mp4")

        self.assertEqual(response.status_code, 201)
        self.assertIn("/events", delivered)


class QueueApiTests(_SettingsEnvCase):
    def test_queue_endpoints(self) -> None:
        client = TestClient(create_app())

        missing = client.get("/api/v1/queue/jobs/missing", headers=ADMIN)
        self.assertEqual(missing.status_code, 404)

        status_response = client.get("/api/v1/queue/status", headers=ADMIN)
        self.assertEqual(status_response.status_code, 200)
        self.assertEqual(status_response.json()["metrics"]["total"], 0)

        self.assertEqual(client.get("/api/v1/queue/status", headers=TRANSLATOR).status_code, 403)
        cleanup = client.post("/api/v1/queue/cleanup", headers=ADMIN)
        self.assertEqual(cleanup.json()["removed"], 0)


if __name__ == "__main__":
    unittest.main()
