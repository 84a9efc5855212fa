"""In-process job queue for long-running pipeline work.

Jobs run on a bounded thread pool. Each job is retried with exponential
backoff up to ``max_attempts``; when retries are exhausted the job is marked
``failed`` and the registered failure hook runs so the owning pipeline step
can record the error.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
import logging
import threading
import time
from typing import Any
from uuid import uuid4

from tenacity import RetryCallState, Retrying, stop_after_attempt, wait_exponential

from dubtrack.adapters.notify import NotificationSink, publish_safely
from dubtrack.schemas.queue import JobState

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 60.0


@dataclass(slots=True)
class QueueJobRecord:
    id: str
    name: str
    payload: dict[str, Any]
    max_attempts: int
    created_at: datetime
    state: JobState = JobState.QUEUED
    attempt: int = 0
    last_error: str | None = None
    result: dict[str, Any] | None = None
    project_id: str | None = None
    episode_id: str | None = None
    step: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


JobHandler = Callable[[QueueJobRecord], dict[str, Any] | None]
FailureHook = Callable[[QueueJobRecord, BaseException], None]


@dataclass(slots=True)
class _Registration:
    handler: JobHandler
    on_failure: FailureHook | None = None


@dataclass(slots=True)
class RetentionPolicy:
    completed_age: timedelta = timedelta(hours=24)
    completed_count: int = 100
    failed_age: timedelta = timedelta(days=7)


class UnknownJobError(KeyError):
    """Raised when a job name has no registered handler."""


class JobQueue:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        workers: int = 1,
        retention: RetentionPolicy | None = None,
        sink: NotificationSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._retention = retention or RetentionPolicy()
        self._sink = sink
        self._sleep = sleep
        self._clock = clock
        self._registrations: dict[str, _Registration] = {}
        self._jobs: dict[str, QueueJobRecord] = {}
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dubtrack-job")

    def register(self, name: str, handler: JobHandler, *, on_failure: FailureHook | None = None) -> None:
        self._registrations[name] = _Registration(handler=handler, on_failure=on_failure)

    def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        project_id: str | None = None,
        episode_id: str | None = None,
        step: int | None = None,
    ) -> QueueJobRecord:
        if name not in self._registrations:
            raise UnknownJobError(name)

        job = QueueJobRecord(
            id=str(uuid4()),
            name=name,
            payload=dict(payload),
            max_attempts=self._max_attempts,
            created_at=self._clock(),
            project_id=project_id,
            episode_id=episode_id,
            step=step,
        )
        with self._lock:
            self._jobs[job.id] = job
        logger.info("job.queued job_id=%s name=%s episode_id=%s step=%s", job.id, name, episode_id, step)
        publish_safely(self._sink, "job.queued", self._event_payload(job))
        future = self._executor.submit(self._run, job.id)
        with self._lock:
            if job.id in self._jobs:
                self._futures[job.id] = future
        return self._snapshot(job)

    def status(self, job_id: str) -> QueueJobRecord | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job is not None else None

    def join(self, job_id: str, timeout: float | None = None) -> QueueJobRecord | None:
        """Block until the job has finished; intended for callers that need the outcome inline."""
        future = self._futures.get(job_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError:
                logger.warning("job.join_timeout job_id=%s timeout_seconds=%s", job_id, timeout)
        return self.status(job_id)

    def metrics(self) -> dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    def active_jobs(self) -> list[QueueJobRecord]:
        with self._lock:
            jobs = [self._snapshot(job) for job in self._jobs.values() if job.state is JobState.ACTIVE]
        jobs.sort(key=lambda job: job.created_at)
        return jobs

    def cleanup(self) -> int:
        """Apply the retention policy and return the number of jobs removed."""
        now = self._clock()
        with self._lock:
            completed = sorted(
                (job for job in self._jobs.values() if job.state is JobState.COMPLETED),
                key=lambda job: job.finished_at or job.created_at,
                reverse=True,
            )
            expired = [
                job.id
                for position, job in enumerate(completed)
                if position >= self._retention.completed_count
                or now - (job.finished_at or job.created_at) > self._retention.completed_age
            ]
            expired.extend(
                job.id
                for job in self._jobs.values()
                if job.state is JobState.FAILED
                and now - (job.finished_at or job.created_at) > self._retention.failed_age
            )
            for job_id in expired:
                self._jobs.pop(job_id, None)
                self._futures.pop(job_id, None)
        if expired:
            logger.info("job.cleanup removed=%s", len(expired))
        return len(expired)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _run(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            job.state = JobState.ACTIVE
            job.started_at = self._clock()
        registration = self._registrations[job.name]
        publish_safely(self._sink, "job.active", self._event_payload(job))

        retrying = Retrying(
            stop=stop_after_attempt(job.max_attempts),
            wait=wait_exponential(multiplier=self._backoff_seconds, max=_MAX_BACKOFF_SECONDS),
            sleep=self._sleep,
            before_sleep=lambda state: self._before_retry(job, state),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    with self._lock:
                        job.attempt = attempt.retry_state.attempt_number
                    result = registration.handler(self._snapshot(job))
        except Exception as exc:
            self._mark_failed(job, exc)
            if registration.on_failure is not None:
                try:
                    registration.on_failure(self._snapshot(job), exc)
                except Exception as hook_exc:
                    logger.exception(
                        "job.failure_hook_failed job_id=%s name=%s reason=%s",
                        job.id,
                        job.name,
                        type(hook_exc).__name__,
                    )
        else:
            with self._lock:
                job.state = JobState.COMPLETED
                job.result = dict(result) if result else None
                job.finished_at = self._clock()
            logger.info("job.completed job_id=%s name=%s attempts=%s", job.id, job.name, job.attempt)
            publish_safely(self._sink, "job.completed", self._event_payload(job))
        finally:
            self.cleanup()

    def _before_retry(self, job: QueueJobRecord, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        with self._lock:
            job.last_error = str(error) if error is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0
        logger.warning(
            "job.retrying job_id=%s name=%s attempt=%s next_delay_seconds=%s reason=%s",
            job.id,
            job.name,
            retry_state.attempt_number,
            delay,
            type(error).__name__ if error is not None else "unknown",
        )
        publish_safely(self._sink, "job.retrying", self._event_payload(job))

    def _mark_failed(self, job: QueueJobRecord, exc: BaseException) -> None:
        with self._lock:
            job.state = JobState.FAILED
            job.last_error = str(exc) or type(exc).__name__
            job.finished_at = self._clock()
        logger.warning(
            "job.failed job_id=%s name=%s attempts=%s reason=%s",
            job.id,
            job.name,
            job.attempt,
            type(exc).__name__,
        )
        publish_safely(self._sink, "job.failed", self._event_payload(job))

    @staticmethod
    def _snapshot(job: QueueJobRecord) -> QueueJobRecord:
        return copy.deepcopy(job)

    @staticmethod
    def _event_payload(job: QueueJobRecord) -> dict[str, Any]:
        return {
            "job_id": job.id,
            "name": job.name,
            "state": job.state.value,
            "attempt": job.attempt,
            "episode_id": job.episode_id,
            "step": job.step,
            "last_error": job.last_error,
        }
