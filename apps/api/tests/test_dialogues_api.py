"""Dialogue review workflow and concurrent edit tests."""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
import os
import threading
import unittest

from fastapi.testclient import TestClient

from dubtrack.adapters.notify import NotificationSink
from dubtrack.adapters.storage import InMemoryObjectStorage
from dubtrack.core.config import get_settings
from dubtrack.main import create_app
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.dialogue import DialogueUpdateRequest
from dubtrack.services.dialogues import DialogueReviewService

ADMIN = {"Authorization": "Bearer test:root:admin"}
TRANSCRIBER = {"Authorization": "Bearer test:tom"}
TRANSLATOR = {"Authorization": "Bearer test:tina"}
DIRECTOR = {"Authorization": "Bearer test:dora"}
VOICE = {"Authorization": "Bearer test:vic"}
OUTSIDER = {"Authorization": "Bearer test:mallory"}


def _dialogue(project_index: int, scene: int, line: int, character: str, status: str = "pending") -> dict:
    number = f"{project_index}.01.{scene:02d}.{line:03d}"
    return {
        "dialogue_number": number,
        "scene_number": scene,
        "line_number": line,
        "character_name": character,
        "text": {"original": f"line {line}", "translated": "", "adapted": ""},
        "time_start": float(line),
        "time_end": float(line) + 1.5,
        "clip_key": f"pilot/pilot_Ep_01/clips/{number}.mp4",
        "status": status,
        "voice_over_url": None,
        "processed_voice_over_url": None,
        "voice_id": None,
        "director_notes": None,
        "voice_over_notes": None,
        "revision_requested": False,
        "needs_rerecord": False,
        "updated_at": None,
        "updated_by": None,
    }


class _LoopCheckingSink(NotificationSink):
    """Records whether each event was published from inside a running event loop."""

    def __init__(self) -> None:
        self.events: list[tuple[str, bool]] = []

    def publish(self, event: str, payload: dict) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            on_loop = False
        else:
            on_loop = True
        self.events.append((event, on_loop))


class _SettingsEnvCase(unittest.TestCase):
    _env_keys = (
        "DUBTRACK_AUTH_PROVIDER",
        "DUBTRACK_CALLBACK_SECRET",
        "DUBTRACK_STORAGE_PROVIDER",
        "DUBTRACK_NOTIFICATION_WEBHOOK_URL",
    )

    def setUp(self) -> None:
        self._old_env = {k: os.environ.get(k) for k in self._env_keys}
        os.environ["DUBTRACK_AUTH_PROVIDER"] = "mock"
        os.environ["DUBTRACK_CALLBACK_SECRET"] = "test-callback-secret"
        os.environ["DUBTRACK_STORAGE_PROVIDER"] = "memory"
        os.environ.pop("DUBTRACK_NOTIFICATION_WEBHOOK_URL", None)
        get_settings.cache_clear()

    def tearDown(self) -> None:
        for key, value in self._old_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value
        get_settings.cache_clear()


class DialogueReviewApiTests(_SettingsEnvCase):
    def setUp(self) -> None:
        super().setUp()
        self.app = create_app()
        self.app.state.object_storage = InMemoryObjectStorage()
        self.client = TestClient(self.app)

        response = self.client.post(
            "/api/v1/episodes",
            headers=ADMIN,
            data={"title": "Pilot"},
            files=[("videos", ("ep1.mp4", b"video", "video/mp4"))],
        )
        self.assertEqual(response.status_code, 201, response.text)
        self.project = response.json()["project"]
        self.client.post(
            f"/api/v1/projects/{self.project['id']}/assign",
            headers=ADMIN,
            json={
                "assignments": [
                    {"username": "tom", "role": "transcriber"},
                    {"username": "tina", "role": "translator"},
                    {"username": "dora", "role": "director"},
                    {"username": "vic", "role": "voiceOver"},
                ]
            },
        )

        store = self.app.state.store
        project = store.get_project(self.project["id"])
        _, self.handle = self.app.state.tenant_router.resolve_episode_collection(project, 1)
        store.upsert_scene(
            self.handle.collection,
            {
                "scene_number": 2,
                "dialogues": [_dialogue(1, 2, 5, "Ana"), _dialogue(1, 2, 6, "Ben", status="translated")],
            },
        )

    def _update(self, number: str, headers: dict, **body) -> dict:
        response = self.client.patch(f"/api/v1/dialogues/update/{number}", headers=headers, json=body)
        return {"status_code": response.status_code, **response.json()}

    def test_full_review_cycle(self) -> None:
        transcribed = self._update("1.1.2.5", TRANSCRIBER, action="transcribe", original="Where were you?")
        self.assertEqual(transcribed["status_code"], 200)
        self.assertEqual(transcribed["dialogue"]["status"], "transcribed")
        self.assertEqual(transcribed["collection_name"], "pilot_Ep_01")
        self.assertEqual(transcribed["dialogue"]["updated_by"], "tom")

        translated = self._update("1.01.02.005", TRANSLATOR, action="translate", translated="¿Dónde estabas?")
        self.assertEqual(translated["dialogue"]["status"], "translated")
        self.assertEqual(translated["dialogue"]["text"]["original"], "Where were you?")

        reviewed = self._update(
            "1.01.02.005",
            DIRECTOR,
            action="review",
            revision_requested=True,
            needs_rerecord=True,
            director_notes="Too flat",
        )
        self.assertEqual(reviewed["dialogue"]["status"], "needs-rerecord")
        self.assertEqual(reviewed["dialogue"]["director_notes"], "Too flat")

        voiced = self._update(
            "1.01.02.005",
            VOICE,
            action="voice_over",
            voice_over_url="https://cdn.test/take2.wav",
            voice_over_notes="second take",
        )
        self.assertEqual(voiced["dialogue"]["status"], "voice-over-added")

        again = self._update("1.01.02.005", VOICE, action="voice_over", voice_over_url="https://cdn.test/take3.wav")
        self.assertEqual(again["dialogue"]["status"], "voice-over-added")
        self.assertEqual(again["dialogue"]["voice_over_notes"], "second take")

        removed = self.client.delete("/api/v1/dialogues/remove-voice/1.01.02.005", headers=DIRECTOR).json()
        self.assertEqual(removed["dialogue"]["status"], "pending")
        self.assertIsNone(removed["dialogue"]["voice_over_url"])
        self.assertIsNone(removed["dialogue"]["voice_over_notes"])
        self.assertEqual(removed["dialogue"]["text"]["translated"], "¿Dónde estabas?")

        untouched = self.client.get("/api/v1/dialogues/1.01.02.006", headers=TRANSLATOR).json()
        self.assertEqual(untouched["status"], "translated")
        self.assertIsNone(untouched["updated_by"])

    def test_roles_and_transitions_are_enforced(self) -> None:
        wrong_role = self._update("1.01.02.006", TRANSLATOR, action="review")
        self.assertEqual(wrong_role["status_code"], 403)
        self.assertEqual(wrong_role["code"], "UNAUTHORIZED")

        outsider = self._update("1.01.02.006", OUTSIDER, action="translate", translated="x")
        self.assertEqual(outsider["status_code"], 403)

        removal = self.client.delete("/api/v1/dialogues/remove-voice/1.01.02.006", headers=TRANSLATOR)
        self.assertEqual(removal.status_code, 403)

        illegal = self._update("1.01.02.005", TRANSLATOR, action="translate", translated="x")
        self.assertEqual(illegal["status_code"], 409)
        self.assertEqual(illegal["code"], "FSM_TRANSITION_INVALID")
        self.assertEqual(illegal["details"]["current_status"], "pending")

        no_url = self._update("1.01.02.006", VOICE, action="voice_over")
        self.assertEqual(no_url["status_code"], 400)
        self.assertEqual(no_url["code"], "VALIDATION_ERROR")

        admin = self._update("1.01.02.006", ADMIN, action="review")
        self.assertEqual(admin["dialogue"]["status"], "approved")

    def test_dialogue_numbers_are_validated_and_resolved(self) -> None:
        for number in ("1.01.02", "1.01.02.005.1", "a.01.02.005"):
            with self.subTest(number=number):
                response = self.client.get(f"/api/v1/dialogues/{number}", headers=ADMIN)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["code"], "INVALID_FORMAT")

        for number in ("9.01.02.005", "1.02.02.005", "1.01.09.009"):
            with self.subTest(number=number):
                response = self.client.get(f"/api/v1/dialogues/{number}", headers=ADMIN)
                self.assertEqual(response.status_code, 404)

        listed = self.client.get(f"/api/v1/projects/{self.project['id']}/episodes/1/dialogues", headers=TRANSLATOR)
        self.assertEqual([item["dialogue_number"] for item in listed.json()], ["1.01.02.005", "1.01.02.006"])
        missing_episode = self.client.get(f"/api/v1/projects/{self.project['id']}/episodes/4/dialogues", headers=ADMIN)
        self.assertEqual(missing_episode.status_code, 404)

    def test_dialogue_writes_publish_off_the_event_loop(self) -> None:
        sink = _LoopCheckingSink()
        self.app.state.notification_sink = sink

        self._update("1.01.02.005", TRANSCRIBER, action="transcribe", original="Hello")
        self.client.delete("/api/v1/dialogues/remove-voice/1.01.02.005", headers=DIRECTOR)

        self.assertEqual(sink.events, [("dialogue.updated", False), ("dialogue.updated", False)])

    def test_progress_tracks_the_review_workflow(self) -> None:
        url = f"/api/v1/projects/{self.project['id']}/progress"
        seeded = self.client.get(url, headers=ADMIN).json()
        self.assertEqual(
            {key: seeded[key] for key in ("transcribed", "translated", "voice_over", "approved", "total")},
            {"transcribed": 100, "translated": 0, "voice_over": 0, "approved": 0, "total": 2},
        )

        self._update("1.01.02.006", TRANSLATOR, action="translate", translated="hola")
        self._update("1.01.02.006", DIRECTOR, action="review")
        reviewed = self.client.get(url, headers=ADMIN).json()
        self.assertEqual((reviewed["translated"], reviewed["approved"]), (50, 50))

        self._update("1.01.02.006", VOICE, action="voice_over", voice_over_url="https://cdn.test/take1.wav")
        voiced = self.client.get(url, headers=ADMIN).json()
        self.assertEqual((voiced["voice_over"], voiced["approved"]), (50, 0))

        self.assertEqual(self.client.get(url, headers=DIRECTOR).status_code, 403)
        self.assertEqual(self.client.get("/api/v1/projects/missing/progress", headers=ADMIN).status_code, 404)

    def test_concurrent_edits_of_one_dialogue_keep_every_field_family(self) -> None:
        service = DialogueReviewService(self.app.state.store, self.app.state.tenant_router)
        translator = AuthPrincipal(user_id="tina")
        director = AuthPrincipal(user_id="dora")
        barrier = threading.Barrier(8)

        def translate(index: int):
            barrier.wait()
            return service.update_dialogue(
                principal=translator,
                dialogue_number="1.01.02.006",
                request=DialogueUpdateRequest(action="translate", translated=f"draft {index}"),
            )

        def review(index: int):
            barrier.wait()
            return service.update_dialogue(
                principal=director,
                dialogue_number="1.01.02.006",
                request=DialogueUpdateRequest(action="review", revision_requested=True, director_notes=f"note {index}"),
            )

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(translate, index) for index in range(4)]
            futures += [pool.submit(review, index) for index in range(4)]
            results = [future.result(timeout=5) for future in futures]

        self.assertEqual(len(results), 8)
        final = self.client.get("/api/v1/dialogues/1.01.02.006", headers=ADMIN).json()
        self.assertIn(final["text"]["translated"], {f"draft {index}" for index in range(4)})
        self.assertIn(final["director_notes"], {f"note {index}" for index in range(4)})
        self.assertEqual(final["text"]["original"], "line 6")
        self.assertIn(final["status"], {"translated", "revision-requested"})

        sibling = self.client.get("/api/v1/dialogues/1.01.02.005", headers=ADMIN).json()
        self.assertEqual(sibling["status"], "pending")


if __name__ == "__main__":
    unittest.main()
