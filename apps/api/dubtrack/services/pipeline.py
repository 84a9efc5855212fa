"""Episode pipeline orchestration.

Steps run in order 1..5 and every status change goes through the step FSM in
``dubtrack.domain.pipeline_fsm`` via ``InMemoryStore.transition_step``. Step 1
runs on the job queue; steps 2..5 run inline. A failing step records its error
on the step and on the episode and leaves ``episode.step`` untouched so the
step can be run again.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from dubtrack.adapters.notify import NotificationSink, publish_safely
from dubtrack.adapters.services import ExternalServices, UpstreamServiceError, UpstreamTimeoutError
from dubtrack.domain.dialogue_number import DialogueNumber
from dubtrack.errors import ApiError, invalid_input, not_found, precondition_failed
from dubtrack.repositories.memory import EpisodeRecord, InMemoryStore, ProjectRecord
from dubtrack.schemas.auth import AuthPrincipal
from dubtrack.schemas.dialogue import DialogueStatus
from dubtrack.schemas.episode import (
    PIPELINE_FINISHED_STEP,
    PIPELINE_STEPS,
    CharacterVoice,
    Episode,
    EpisodeStatus,
    EpisodeSummary,
    PrepareClipsRequest,
    StepState,
    StepStatus,
)
from dubtrack.services.job_queue import JobQueue, QueueJobRecord
from dubtrack.services.tenant_router import TenantRouter

logger = logging.getLogger(__name__)

CLEAN_AUDIO_JOB = "clean-audio"
_SYSTEM_ACTOR = "pipeline"


@dataclass(slots=True)
class StepRunResult:
    episode: Episode
    step: int
    status: StepStatus
    job_id: str | None = None
    replayed: bool = False


@dataclass(slots=True)
class VoiceAssignmentResult:
    episode: Episode
    character_voices: list[CharacterVoice]
    updated_dialogues: int
    replayed: bool = False


def to_episode_summary(record: EpisodeRecord) -> EpisodeSummary:
    return EpisodeSummary(
        id=record.id,
        number=record.number,
        name=record.name,
        collection_name=record.collection_name,
        status=record.status,
        step=record.step,
    )


def to_episode(record: EpisodeRecord) -> Episode:
    return Episode(
        id=record.id,
        project_id=record.project_id,
        number=record.number,
        name=record.name,
        collection_name=record.collection_name,
        status=record.status,
        step=record.step,
        video_key=record.video_key,
        steps={
            f"step{number}": StepState(
                status=step.status,
                inputs=step.inputs,
                outputs=step.outputs,
                error=step.error,
                job_id=step.job_id,
                started_at=step.started_at,
                updated_at=step.updated_at,
            )
            for number, step in sorted(record.steps.items())
        },
        error=record.error,
        uploaded_at=record.uploaded_at,
        updated_at=record.updated_at,
    )


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        store: InMemoryStore,
        tenant_router: TenantRouter,
        job_queue: JobQueue,
        services: ExternalServices,
        sink: NotificationSink | None = None,
        reset_after_finalize: bool = False,
    ) -> None:
        self._store = store
        self._router = tenant_router
        self._queue = job_queue
        self._services = services
        self._sink = sink
        self._reset_after_finalize = reset_after_finalize

    def register_jobs(self) -> None:
        self._queue.register(CLEAN_AUDIO_JOB, self._clean_audio_job, on_failure=self._clean_audio_failed)

    def get_episode(self, *, principal: AuthPrincipal, episode_id: str) -> Episode:
        _, episode = self._load(principal, episode_id)
        return to_episode(episode)

    # Step 1: clean audio

    def run_step1(self, *, principal: AuthPrincipal, episode_id: str) -> StepRunResult:
        project, episode = self._load(principal, episode_id)
        with self._store.lock:
            replay = self._replay(episode, 1)
            if replay is not None:
                return replay

            current = episode.steps[1].status
            if current is not StepStatus.ERROR and episode.status is not EpisodeStatus.UPLOADED:
                raise precondition_failed(
                    "Step 1 requires an uploaded episode",
                    details={"step": 1, "episode_status": episode.status, "current_status": current},
                )

            self._begin(episode, 1, inputs={"name": episode.name, "video_key": episode.video_key})
            job = self._queue.enqueue(
                CLEAN_AUDIO_JOB,
                {"episode_id": episode.id, "video_key": episode.video_key},
                project_id=project.id,
                episode_id=episode.id,
                step=1,
            )
            episode.steps[1].job_id = job.id

        logger.info("pipeline.step_dispatched episode_id=%s step=1 job_id=%s", episode.id, job.id)
        return StepRunResult(
            episode=to_episode(episode),
            step=1,
            status=episode.steps[1].status,
            job_id=job.id,
        )

    def record_clean_audio_callback(
        self,
        *,
        episode_id: str,
        succeeded: bool,
        outputs: dict[str, str],
        error: str | None,
    ) -> StepRunResult:
        """Apply a step 1 result reported directly by the audio cleaner."""
        found = self._store.find_episode(episode_id)
        if found is None:
            raise not_found()
        _, episode = found

        with self._store.lock:
            step = episode.steps[1]
            if step.status is StepStatus.COMPLETED and succeeded and step.outputs == outputs:
                return StepRunResult(episode=to_episode(episode), step=1, status=step.status, replayed=True)
            if succeeded:
                self._complete(episode, 1, outputs)
            else:
                self._fail(episode, 1, error or "Audio cleaning failed")
        return StepRunResult(episode=to_episode(episode), step=1, status=episode.steps[1].status)

    def _clean_audio_job(self, job: QueueJobRecord) -> dict[str, Any]:
        found = self._store.find_episode(job.payload["episode_id"])
        if found is None:
            logger.warning("pipeline.job_orphaned job_id=%s episode_id=%s", job.id, job.payload["episode_id"])
            return {"skipped": "episode_deleted"}
        project, episode = found

        outputs = self._services.audio_cleaner.clean(
            video_key=job.payload["video_key"],
            output_prefix=f"{project.slug}/{episode.collection_name}/audio",
        )
        with self._store.lock:
            step = episode.steps[1]
            if step.status is not StepStatus.PROCESSING or step.job_id != job.id:
                logger.info("pipeline.job_superseded job_id=%s episode_id=%s status=%s", job.id, episode.id, step.status)
                return dict(outputs)
            self._complete(episode, 1, outputs)
        return dict(outputs)

    def _clean_audio_failed(self, job: QueueJobRecord, exc: BaseException) -> None:
        found = self._store.find_episode(job.payload["episode_id"])
        if found is None:
            return
        _, episode = found
        with self._store.lock:
            step = episode.steps[1]
            if step.status is StepStatus.PROCESSING and step.job_id == job.id:
                self._fail(episode, 1, f"Audio cleaning failed after {job.attempt} attempts: {exc}")

    # Step 2: prepare clips

    def run_step2(self, *, principal: AuthPrincipal, episode_id: str, request: PrepareClipsRequest) -> StepRunResult:
        project, episode = self._load(principal, episode_id)
        scenes = self._build_scene_documents(project, episode, request)
        handle = self._router.resolve_collection(project, episode)

        with self._store.lock:
            replay = self._replay(episode, 2)
            if replay is not None:
                return replay
            self._begin(episode, 2, inputs={"scene_count": len(scenes)})

        existing = {item["dialogue_number"]: item for item in self._store.list_dialogues(handle.collection)}
        clips = []
        for scene in scenes:
            for dialogue in scene["dialogues"]:
                previous = existing.get(dialogue["dialogue_number"])
                if previous is not None:
                    # Keep review progress when clips are regenerated.
                    for key in (
                        "status",
                        "text",
                        "voice_over_url",
                        "processed_voice_over_url",
                        "voice_id",
                        "director_notes",
                        "voice_over_notes",
                        "revision_requested",
                        "needs_rerecord",
                        "updated_by",
                    ):
                        dialogue[key] = previous.get(key, dialogue.get(key))
                clips.append({"dialogue_number": dialogue["dialogue_number"], "clip_key": dialogue["clip_key"]})
            self._store.upsert_scene(handle.collection, scene)

        outputs = {
            "collection_name": handle.name,
            "scene_count": len(scenes),
            "dialogue_count": len(clips),
            "clips": clips,
        }
        with self._store.lock:
            self._complete(episode, 2, outputs)
        return StepRunResult(episode=to_episode(episode), step=2, status=StepStatus.COMPLETED)

    @staticmethod
    def _build_scene_documents(
        project: ProjectRecord,
        episode: EpisodeRecord,
        request: PrepareClipsRequest,
    ) -> list[dict[str, Any]]:
        documents = []
        for scene in sorted(request.scenes, key=lambda item: item.scene_number):
            line_numbers = [line.line_number for line in scene.dialogues]
            if not line_numbers:
                raise invalid_input("Scene has no dialogues", details={"scene_number": scene.scene_number})
            if len(line_numbers) != len(set(line_numbers)):
                raise invalid_input(
                    "Line numbers must be unique within a scene",
                    details={"scene_number": scene.scene_number},
                )

            dialogues = []
            for line in sorted(scene.dialogues, key=lambda item: item.line_number):
                number = DialogueNumber(project.index, episode.number, scene.scene_number, line.line_number).format()
                dialogues.append(
                    {
                        "dialogue_number": number,
                        "scene_number": scene.scene_number,
                        "line_number": line.line_number,
                        "character_name": line.character_name,
                        "text": {"original": line.original, "translated": "", "adapted": ""},
                        "time_start": line.time_start,
                        "time_end": line.time_end,
                        "clip_key": f"{project.slug}/{episode.collection_name}/clips/{number}.mp4",
                        "status": DialogueStatus.PENDING.value,
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
                )
            documents.append(
                {
                    "scene_number": scene.scene_number,
                    "description": scene.description,
                    "time_start": scene.time_start,
                    "time_end": scene.time_end,
                    "dialogues": dialogues,
                }
            )
        return documents

    # Step 3: finalize

    def run_step3(self, *, principal: AuthPrincipal, episode_id: str, reset: bool | None = None) -> StepRunResult:
        project, episode = self._load(principal, episode_id)
        handle = self._router.resolve_collection(project, episode)
        with self._store.lock:
            replay = self._replay(episode, 3)
            if replay is not None:
                return replay
            self._begin(episode, 3, inputs={"reset": bool(reset)})

        scenes = self._store.list_scenes(handle.collection)
        problems = []
        if not scenes:
            problems.append("episode has no scenes")
        video_clips = []
        for scene in scenes:
            dialogues = scene.get("dialogues", [])
            if not dialogues:
                problems.append(f"scene {scene['scene_number']} has no dialogues")
            for dialogue in dialogues:
                if not dialogue.get("clip_key"):
                    problems.append(f"dialogue {dialogue['dialogue_number']} has no clip")
                else:
                    video_clips.append(dialogue["clip_key"])

        if problems:
            message = "Finalize validation failed: " + "; ".join(problems)
            with self._store.lock:
                self._fail(episode, 3, message)
            raise precondition_failed(message, details={"step": 3, "problems": problems})

        with self._store.lock:
            self._complete(episode, 3, {"video_clips": video_clips, "scene_count": len(scenes)})
            should_reset = self._reset_after_finalize if reset is None else reset
            if should_reset:
                self._reset_cycle(episode)
        return StepRunResult(episode=to_episode(episode), step=3, status=episode.steps[3].status)

    def _reset_cycle(self, episode: EpisodeRecord) -> None:
        for number in sorted(PIPELINE_STEPS, reverse=True):
            if episode.steps[number].status in (StepStatus.COMPLETED, StepStatus.ERROR):
                self._store.transition_step(episode=episode, step=number, new_status=StepStatus.PENDING)
        episode.step = 1
        episode.status = EpisodeStatus.UPLOADED
        episode.error = None
        logger.info("pipeline.cycle_reset episode_id=%s", episode.id)

    # Step 4: translate

    def run_step4(
        self,
        *,
        principal: AuthPrincipal,
        episode_id: str,
        target_language: str | None = None,
    ) -> StepRunResult:
        project, episode = self._load(principal, episode_id)
        language = target_language or project.target_language
        handle = self._router.resolve_collection(project, episode)
        with self._store.lock:
            replay = self._replay(episode, 4)
            if replay is not None:
                return replay
            self._begin(episode, 4, inputs={"target_language": language})

        dialogues = self._store.list_dialogues(handle.collection)
        payload = {
            "project_id": project.id,
            "episode_id": episode.id,
            "collection_name": handle.name,
            "source_language": project.source_language,
            "target_language": language,
            "video_clips": episode.steps[3].outputs.get("video_clips", []),
            "dialogues": [
                {
                    "dialogue_number": item["dialogue_number"],
                    "character_name": item["character_name"],
                    "original": item["text"].get("original", ""),
                    "time_start": item.get("time_start"),
                    "time_end": item.get("time_end"),
                    "clip_key": item.get("clip_key"),
                }
                for item in dialogues
            ],
        }

        translated = self._call_upstream(episode, 4, lambda: self._services.translation.translate(payload))
        try:
            drafts = self._normalize_drafts(translated, dialogues)
        except ApiError as exc:
            message = "translation returned an invalid dialogue number"
            with self._store.lock:
                self._fail(episode, 4, message)
            raise ApiError(
                status_code=502,
                code="UPSTREAM_FAILED",
                message=message,
                details={"episode_id": episode.id, "step": 4, "reason": exc.payload.message},
            ) from exc
        by_number = {draft["dialogue_number"]: draft for draft in drafts}
        self._store.update_dialogues_where(
            handle.collection,
            lambda item: item.get("dialogue_number") in by_number,
            lambda item: self._draft_patch(item, by_number[item["dialogue_number"]]),
            updated_by=_SYSTEM_ACTOR,
        )

        with self._store.lock:
            self._complete(episode, 4, {"dialogues": drafts, "translated_count": len(drafts)})
        return StepRunResult(episode=to_episode(episode), step=4, status=StepStatus.COMPLETED)

    @staticmethod
    def _normalize_drafts(
        translated: list[dict[str, Any]],
        dialogues: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        characters = {item["dialogue_number"]: item["character_name"] for item in dialogues}
        drafts = []
        for item in translated:
            raw_number = item.get("dialogue_number")
            if raw_number is None:
                continue
            number = DialogueNumber.parse(str(raw_number)).format()
            drafts.append(
                {
                    "dialogue_number": number,
                    "character_name": item.get("character_name") or characters.get(number),
                    "translated": str(item.get("translated") or ""),
                    "adapted": str(item.get("adapted") or ""),
                }
            )
        return drafts

    @staticmethod
    def _draft_patch(dialogue: dict[str, Any], draft: dict[str, Any]) -> dict[str, Any]:
        # Drafts never overwrite text a translator already wrote.
        text = dialogue.get("text", {})
        patch = {}
        if not text.get("translated") and draft["translated"]:
            patch["text.translated"] = draft["translated"]
        if not text.get("adapted") and draft["adapted"]:
            patch["text.adapted"] = draft["adapted"]
        return patch

    # Step 5: characters and voices

    def run_step5(self, *, principal: AuthPrincipal, episode_id: str) -> StepRunResult:
        project, episode = self._load(principal, episode_id)
        self._router.resolve_collection(project, episode)
        with self._store.lock:
            replay = self._replay(episode, 5)
            if replay is not None:
                return replay
            characters = self._distinct_characters(episode.steps[4].outputs.get("dialogues", []))
            self._begin(episode, 5, inputs={"characters": characters})

        if not characters:
            message = "Translation output has no character names"
            with self._store.lock:
                self._fail(episode, 5, message)
            raise precondition_failed(message, details={"step": 5})

        context = {
            "project_id": project.id,
            "episode_id": episode.id,
            "target_language": project.target_language,
        }
        raw = self._call_upstream(
            episode,
            5,
            lambda: self._services.voice_assignment.assign(characters=characters, context=context),
        )
        try:
            voices = [CharacterVoice.model_validate(item) for item in raw]
        except ValueError as exc:
            message = "voice-assignment returned malformed character voices"
            with self._store.lock:
                self._fail(episode, 5, message)
            raise ApiError(
                status_code=502,
                code="UPSTREAM_FAILED",
                message=message,
                details={"episode_id": episode.id, "step": 5},
            ) from exc

        updated = self._finish_voice_assignment(project, episode, voices, updated_by=_SYSTEM_ACTOR)
        logger.info("pipeline.voices_assigned episode_id=%s characters=%s dialogues=%s", episode.id, len(voices), updated)
        return StepRunResult(episode=to_episode(episode), step=5, status=StepStatus.COMPLETED)

    @staticmethod
    def _distinct_characters(dialogues: list[dict[str, Any]]) -> list[str]:
        seen: dict[str, None] = {}
        for item in dialogues:
            name = (item.get("character_name") or "").strip()
            if name:
                seen.setdefault(name, None)
        return list(seen)

    def assign_voices(
        self,
        *,
        principal: AuthPrincipal,
        episode_id: str,
        assignments: list[CharacterVoice],
    ) -> VoiceAssignmentResult:
        """Manual voice mapping; converges on the same step 5 completion as ``run_step5``."""
        project, episode = self._load(principal, episode_id)
        voices = self._validate_assignments(assignments)

        with self._store.lock:
            step = episode.steps[5]
            current = [CharacterVoice.model_validate(item) for item in step.outputs.get("character_voices", [])]
            if step.status is StepStatus.COMPLETED and current == voices:
                return VoiceAssignmentResult(
                    episode=to_episode(episode),
                    character_voices=current,
                    updated_dialogues=0,
                    replayed=True,
                )
            if step.status is StepStatus.PROCESSING:
                raise precondition_failed(
                    "Voice assignment is already running for this episode",
                    details={"step": 5, "current_status": step.status},
                )
            if step.status is StepStatus.COMPLETED:
                self._store.transition_step(episode=episode, step=5, new_status=StepStatus.PENDING)
            self._begin(episode, 5, inputs={"characters": [voice.character_name for voice in voices], "manual": True})

        updated = self._finish_voice_assignment(project, episode, voices, updated_by=principal.user_id)
        return VoiceAssignmentResult(
            episode=to_episode(episode),
            character_voices=voices,
            updated_dialogues=updated,
        )

    def get_voice_assignments(self, *, principal: AuthPrincipal, episode_id: str) -> dict[str, str]:
        project, episode = self._load(principal, episode_id)
        voices = episode.steps[5].outputs.get("character_voices")
        if voices:
            return {item["character_name"]: item["voice_id"] for item in voices}

        handle = self._router.resolve_collection(project, episode)
        mapping: dict[str, str] = {}
        for dialogue in self._store.list_dialogues(handle.collection):
            if dialogue.get("voice_id"):
                mapping.setdefault(dialogue["character_name"], dialogue["voice_id"])
        return mapping

    @staticmethod
    def _validate_assignments(assignments: list[CharacterVoice]) -> list[CharacterVoice]:
        if not assignments:
            raise invalid_input("At least one voice assignment is required")
        voices = []
        seen = set()
        for position, item in enumerate(assignments):
            name = item.character_name.strip()
            voice_id = item.voice_id.strip()
            if not name or not voice_id:
                raise invalid_input(
                    "Voice assignments need a character name and a voice id",
                    details={"index": position},
                )
            if name in seen:
                raise invalid_input("Each character may be assigned only once", details={"character_name": name})
            seen.add(name)
            voices.append(item.model_copy(update={"character_name": name, "voice_id": voice_id}))
        return voices

    def _finish_voice_assignment(
        self,
        project: ProjectRecord,
        episode: EpisodeRecord,
        voices: list[CharacterVoice],
        *,
        updated_by: str,
    ) -> int:
        by_character = {voice.character_name: voice.voice_id for voice in voices}
        handle = self._router.resolve_collection(project, episode)
        updated = self._store.update_dialogues_where(
            handle.collection,
            lambda item: item.get("character_name") in by_character,
            lambda item: {"voice_id": by_character[item["character_name"]]},
            updated_by=updated_by,
        )
        with self._store.lock:
            self._complete(
                episode,
                5,
                {"character_voices": [voice.model_dump(mode="json") for voice in voices]},
            )
        return updated

    # Shared step bookkeeping

    def _load(self, principal: AuthPrincipal, episode_id: str) -> tuple[ProjectRecord, EpisodeRecord]:
        found = self._store.find_episode(episode_id)
        if found is None:
            raise not_found()
        project, episode = found
        self._router.resolve_database(principal, project.id)
        return project, episode

    @staticmethod
    def _replay(episode: EpisodeRecord, step: int) -> StepRunResult | None:
        record = episode.steps[step]
        if record.status in (StepStatus.COMPLETED, StepStatus.PROCESSING):
            logger.info("pipeline.step_replayed episode_id=%s step=%s status=%s", episode.id, step, record.status)
            return StepRunResult(
                episode=to_episode(episode),
                step=step,
                status=record.status,
                job_id=record.job_id,
                replayed=True,
            )
        return None

    def _begin(self, episode: EpisodeRecord, step: int, *, inputs: dict[str, Any]) -> None:
        self._store.transition_step(episode=episode, step=step, new_status=StepStatus.PROCESSING, inputs=inputs)
        episode.status = EpisodeStatus.PROCESSING
        logger.info("pipeline.step_processing episode_id=%s step=%s", episode.id, step)
        publish_safely(self._sink, "pipeline.step.processing", {"episode_id": episode.id, "step": step})

    def _complete(self, episode: EpisodeRecord, step: int, outputs: dict[str, Any]) -> None:
        self._store.transition_step(episode=episode, step=step, new_status=StepStatus.COMPLETED, outputs=outputs)
        episode.step = max(episode.step, step + 1)
        episode.status = EpisodeStatus.PROCESSING
        episode.error = None
        logger.info("pipeline.step_completed episode_id=%s step=%s next_step=%s", episode.id, step, episode.step)
        event = {"episode_id": episode.id, "step": step, "next_step": episode.step}
        if episode.step == PIPELINE_FINISHED_STEP:
            event["finished"] = True
        publish_safely(self._sink, "pipeline.step.completed", event)

    def _fail(self, episode: EpisodeRecord, step: int, message: str) -> None:
        self._store.transition_step(episode=episode, step=step, new_status=StepStatus.ERROR, error=message)
        episode.status = EpisodeStatus.ERROR
        episode.error = message
        logger.warning("pipeline.step_failed episode_id=%s step=%s", episode.id, step)
        publish_safely(self._sink, "pipeline.step.error", {"episode_id": episode.id, "step": step, "error": message})

    def _call_upstream(self, episode: EpisodeRecord, step: int, call):
        try:
            return call()
        except UpstreamTimeoutError as exc:
            with self._store.lock:
                self._fail(episode, step, str(exc))
            raise ApiError(
                status_code=504,
                code="UPSTREAM_TIMEOUT",
                message="External service timed out",
                details={"episode_id": episode.id, "step": step},
            ) from exc
        except UpstreamServiceError as exc:
            with self._store.lock:
                self._fail(episode, step, str(exc))
            raise ApiError(
                status_code=502,
                code="UPSTREAM_FAILED",
                message="External service failed",
                details={"episode_id": episode.id, "step": step, "reason": str(exc)},
            ) from exc
