"""Job queue retry, failure and retention tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import unittest

from dubtrack.adapters.notify import NotificationSink
from dubtrack.schemas.queue import JobState
from dubtrack.services.job_queue import JobQueue, QueueJobRecord, RetentionPolicy, UnknownJobError


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


class _RecordingSink(NotificationSink):
    def __init__(self) -> None:
        self.events: list[str] = []

    def publish(self, event: str, payload: dict) -> None:
        self.events.append(event)


class _ExplodingSink(NotificationSink):
    def publish(self, event: str, payload: dict) -> None:
        raise ConnectionError("webhook is down")


class JobQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.sleeps: list[float] = []
        self.sink = _RecordingSink()
        self.queue = JobQueue(
            max_attempts=3,
            backoff_seconds=1.0,
            retention=RetentionPolicy(completed_count=2),
            sink=self.sink,
            sleep=self.sleeps.append,
            clock=self.clock,
        )
        self.addCleanup(self.queue.shutdown)

    def test_successful_job_records_result(self) -> None:
        self.queue.register("echo", lambda job: {"echo": job.payload["value"]})

        queued = self.queue.enqueue("echo", {"value": 7}, episode_id="episode-1", step=1)
        self.assertIn(queued.state, (JobState.QUEUED, JobState.ACTIVE, JobState.COMPLETED))

        finished = self.queue.join(queued.id, timeout=5)
        self.assertEqual(finished.state, JobState.COMPLETED)
        self.assertEqual(finished.result, {"echo": 7})
        self.assertEqual(finished.attempt, 1)
        self.assertEqual(self.sink.events, ["job.queued", "job.active", "job.completed"])

    def test_transient_failures_retry_with_exponential_backoff(self) -> None:
        calls: list[int] = []

        def handler(job: QueueJobRecord) -> dict:
            calls.append(job.attempt)
            if len(calls) < 3:
                raise RuntimeError("audio cleaner busy")
            return {"ok": True}

        self.queue.register("flaky", handler)
        finished = self.queue.join(self.queue.enqueue("flaky", {}).id, timeout=5)

        self.assertEqual(finished.state, JobState.COMPLETED)
        self.assertEqual(calls, [1, 2, 3])
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(self.sink.events.count("job.retrying"), 2)

    def test_exhausted_retries_mark_job_failed_and_run_failure_hook(self) -> None:
        failures: list[tuple[int, str]] = []

        def handler(job: QueueJobRecord) -> dict:
            raise RuntimeError("audio cleaner crashed")

        self.queue.register(
            "doomed",
            handler,
            on_failure=lambda job, exc: failures.append((job.attempt, str(exc))),
        )
        finished = self.queue.join(self.queue.enqueue("doomed", {}).id, timeout=5)

        self.assertEqual(finished.state, JobState.FAILED)
        self.assertEqual(finished.attempt, 3)
        self.assertEqual(finished.last_error, "audio cleaner crashed")
        self.assertEqual(failures, [(3, "audio cleaner crashed")])
        self.assertEqual(self.queue.metrics()["failed"], 1)
        self.assertIn("job.failed", self.sink.events)

    def test_unknown_job_name_is_rejected(self) -> None:
        with self.assertRaises(UnknownJobError):
            self.queue.enqueue("missing", {})

    def test_retention_keeps_most_recent_completed_jobs_and_expires_old_ones(self) -> None:
        def fail(job: QueueJobRecord) -> None:
            raise RuntimeError("boom")

        self.queue.register("noop", lambda job: None)
        self.queue.register("fail", fail)

        for _ in range(4):
            self.queue.join(self.queue.enqueue("noop", {}).id, timeout=5)
        failed_id = self.queue.enqueue("fail", {}).id
        self.queue.join(failed_id, timeout=5)

        metrics = self.queue.metrics()
        self.assertEqual(metrics["completed"], 2)
        self.assertEqual(metrics["failed"], 1)

        self.clock.now += timedelta(hours=25)
        self.assertEqual(self.queue.cleanup(), 2)
        self.assertIsNotNone(self.queue.status(failed_id))

        self.clock.now += timedelta(days=7)
        self.assertEqual(self.queue.cleanup(), 1)
        self.assertIsNone(self.queue.status(failed_id))
        self.assertEqual(self.queue.metrics()["total"], 0)

    def test_notification_failures_never_fail_the_job(self) -> None:
        queue = JobQueue(sink=_ExplodingSink(), sleep=lambda _: None)
        self.addCleanup(queue.shutdown)
        queue.register("noop", lambda job: {"done": True})

        finished = queue.join(queue.enqueue("noop", {}).id, timeout=5)
        self.assertEqual(finished.state, JobState.COMPLETED)


if __name__ == "__main__":
    unittest.main()
