"""Multipart upload coordination for large episode videos."""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
import logging
from pathlib import PurePosixPath
import threading
import time
from typing import BinaryIO
from uuid import uuid4

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from dubtrack.adapters.notify import NotificationSink, publish_safely
from dubtrack.adapters.storage import (
    NoSuchUploadError,
    ObjectStorage,
    ObjectStorageError,
    StorageUnavailableError,
)
from dubtrack.errors import ApiError, invalid_input, not_found
from dubtrack.schemas.upload import MAX_PART_NUMBER

logger = logging.getLogger(__name__)

_VIDEO_CONTENT_TYPE_PREFIX = "video/"
_COMPLETED_UPLOADS_KEPT = 512


@dataclass(slots=True)
class _CommittedPart:
    etag: str
    size: int


@dataclass(slots=True)
class UploadSession:
    upload_id: str
    object_key: str
    content_type: str
    created_at: datetime
    parts: dict[int, _CommittedPart] = field(default_factory=dict)

    @property
    def total_size(self) -> int:
        return sum(part.size for part in self.parts.values())


@dataclass(slots=True)
class UploadSource:
    """One file of a batch; ``stream`` is read chunk by chunk, never whole."""

    file_name: str
    content_type: str
    stream: BinaryIO
    object_key: str


@dataclass(slots=True)
class FileUploadOutcome:
    file_name: str
    object_key: str
    success: bool
    size: int | None = None
    error: str | None = None


def storage_unavailable(exc: Exception) -> ApiError:
    return ApiError(
        status_code=503,
        code="STORAGE_UNAVAILABLE",
        message="Object storage is unavailable",
        details={"reason": str(exc)},
    )


def storage_failed(exc: Exception) -> ApiError:
    return ApiError(
        status_code=502,
        code="UPSTREAM_FAILED",
        message="Object storage rejected the request",
        details={"reason": str(exc)},
    )


def ensure_video_content_type(file_name: str, content_type: str | None) -> None:
    if not content_type or not content_type.lower().startswith(_VIDEO_CONTENT_TYPE_PREFIX):
        raise invalid_input(
            "Only video files are accepted",
            details={"file_name": file_name, "content_type": content_type},
        )


class UploadCoordinator:
    """Owns multipart sessions and the bounded pool used for batch uploads."""

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        chunk_size: int,
        max_workers: int = 3,
        max_file_size: int | None = None,
        part_attempts: int = 3,
        part_backoff_seconds: float = 1.0,
        sink: NotificationSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        completed_kept: int = _COMPLETED_UPLOADS_KEPT,
    ) -> None:
        self._storage = storage
        self._chunk_size = chunk_size
        self._max_file_size = max_file_size
        self._part_attempts = part_attempts
        self._part_backoff_seconds = part_backoff_seconds
        self._sink = sink
        self._sleep = sleep
        self._sessions: dict[str, UploadSession] = {}
        # Most recent completions only; replaying an older upload id reports it unknown.
        self._completed: OrderedDict[str, tuple[str, int]] = OrderedDict()
        self._completed_kept = completed_kept
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dubtrack-upload")

    @property
    def storage(self) -> ObjectStorage:
        return self._storage

    def init_upload(self, *, file_name: str, content_type: str, object_key: str | None = None) -> UploadSession:
        name = PurePosixPath(file_name.strip()).name
        if not name:
            raise invalid_input("File name is required", details={"file_name": file_name})
        ensure_video_content_type(name, content_type)
        key = object_key.strip() if object_key else f"uploads/{uuid4().hex}/{name}"

        try:
            upload_id = self._storage.create_multipart_upload(key, content_type)
        except StorageUnavailableError as exc:
            logger.warning("upload.init_failed object_key=%s reason=%s", key, type(exc).__name__)
            raise storage_unavailable(exc) from exc
        except ObjectStorageError as exc:
            raise storage_failed(exc) from exc

        session = UploadSession(
            upload_id=upload_id,
            object_key=key,
            content_type=content_type,
            created_at=datetime.now(UTC),
        )
        with self._lock:
            self._sessions[upload_id] = session
        logger.info("upload.initialized upload_id=%s object_key=%s", upload_id, key)
        return session

    def upload_part(self, *, upload_id: str, object_key: str, part_number: int, data: bytes) -> str:
        if part_number < 1 or part_number > MAX_PART_NUMBER:
            raise invalid_input(
                "Part number is out of range",
                details={"part_number": part_number, "min": 1, "max": MAX_PART_NUMBER},
            )
        if not data:
            raise invalid_input("Part body is empty", details={"part_number": part_number})
        self._session(upload_id, object_key)

        try:
            etag = self._storage.upload_part(object_key, upload_id, part_number, data)
        except NoSuchUploadError as exc:
            raise not_found() from exc
        except StorageUnavailableError as exc:
            logger.warning(
                "upload.part_failed upload_id=%s part_number=%s reason=%s",
                upload_id,
                part_number,
                type(exc).__name__,
            )
            raise storage_unavailable(exc) from exc
        except ObjectStorageError as exc:
            raise storage_failed(exc) from exc

        with self._lock:
            session = self._sessions.get(upload_id)
            if session is not None:
                # A repeated part number replaces the earlier commit.
                session.parts[part_number] = _CommittedPart(etag=etag, size=len(data))
        return etag

    def complete_upload(
        self,
        *,
        upload_id: str,
        object_key: str,
        parts: Sequence[tuple[int, str]],
    ) -> tuple[str, int]:
        """Assemble committed parts in ascending part order; returns ``(object_key, size)``."""
        with self._lock:
            finished = self._completed.get(upload_id)
        if finished is not None and finished[0] == object_key:
            return finished

        session = self._session(upload_id, object_key)
        numbers = [number for number, _ in parts]
        if len(numbers) != len(set(numbers)):
            raise invalid_input("Part numbers must be unique", details={"parts": sorted(numbers)})

        ordered = sorted(parts, key=lambda part: part[0])
        with self._lock:
            committed = dict(session.parts)
        present = set(numbers)
        missing = [number for number in range(1, len(ordered) + 1) if number not in present]
        uncommitted = [number for number, _ in ordered if number not in committed]
        mismatched = [
            number
            for number, etag in ordered
            if number in committed and committed[number].etag != etag
        ]
        if missing or uncommitted or mismatched:
            raise ApiError(
                status_code=409,
                code="INCOMPLETE_UPLOAD",
                message="Upload parts are incomplete; abort the upload or send the missing parts",
                details={
                    "upload_id": upload_id,
                    "missing_parts": missing,
                    "uncommitted_parts": uncommitted,
                    "etag_mismatch_parts": mismatched,
                },
            )

        try:
            self._storage.complete_multipart_upload(object_key, upload_id, ordered)
        except NoSuchUploadError as exc:
            raise not_found() from exc
        except StorageUnavailableError as exc:
            raise storage_unavailable(exc) from exc
        except ObjectStorageError as exc:
            raise storage_failed(exc) from exc

        size = sum(committed[number].size for number, _ in ordered)
        with self._lock:
            self._sessions.pop(upload_id, None)
            self._completed[upload_id] = (object_key, size)
            while len(self._completed) > self._completed_kept:
                self._completed.popitem(last=False)
        logger.info("upload.completed upload_id=%s object_key=%s parts=%s size=%s", upload_id, object_key, len(ordered), size)
        return object_key, size

    def abort_upload(self, *, upload_id: str, object_key: str) -> bool:
        """Release storage-side state; returns ``False`` when there was nothing to abort."""
        with self._lock:
            if upload_id in self._completed:
                return False
            session = self._sessions.pop(upload_id, None)

        try:
            self._storage.abort_multipart_upload(object_key, upload_id)
        except NoSuchUploadError:
            return False
        except StorageUnavailableError as exc:
            if session is not None:
                with self._lock:
                    self._sessions[upload_id] = session
            raise storage_unavailable(exc) from exc
        logger.info("upload.aborted upload_id=%s object_key=%s known=%s", upload_id, object_key, session is not None)
        return session is not None

    def upload_files(self, sources: Sequence[UploadSource]) -> list[FileUploadOutcome]:
        """Upload a batch on the bounded pool; one file's failure never affects another."""
        futures = [self._pool.submit(self._upload_one, source) for source in sources]
        return [future.result() for future in futures]

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def _upload_one(self, source: UploadSource) -> FileUploadOutcome:
        try:
            session = self.init_upload(
                file_name=source.file_name,
                content_type=source.content_type,
                object_key=source.object_key,
            )
        except ApiError as exc:
            return self._failed(source, exc.payload.message)

        try:
            parts = self._stream_parts(session, source.stream)
            object_key, size = self.complete_upload(
                upload_id=session.upload_id,
                object_key=session.object_key,
                parts=parts,
            )
        except Exception as exc:
            message = exc.payload.message if isinstance(exc, ApiError) else str(exc) or type(exc).__name__
            self._abort_quietly(session)
            return self._failed(source, message)

        publish_safely(
            self._sink,
            "upload.file.completed",
            {"file_name": source.file_name, "object_key": object_key, "size": size},
        )
        return FileUploadOutcome(file_name=source.file_name, object_key=object_key, success=True, size=size)

    def _stream_parts(self, session: UploadSession, stream: BinaryIO) -> list[tuple[int, str]]:
        parts: list[tuple[int, str]] = []
        total = 0
        part_number = 1
        while True:
            chunk = stream.read(self._chunk_size)
            if not chunk:
                break
            total += len(chunk)
            if self._max_file_size is not None and total > self._max_file_size:
                raise ValueError(f"File exceeds the {self._max_file_size} byte limit")
            parts.append((part_number, self._upload_part_with_retry(session, part_number, chunk)))
            part_number += 1

        if not parts:
            raise ValueError("File is empty")
        return parts

    def _upload_part_with_retry(self, session: UploadSession, part_number: int, chunk: bytes) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(self._part_attempts),
            wait=wait_exponential(multiplier=self._part_backoff_seconds, max=30),
            retry=retry_if_exception_type(StorageUnavailableError),
            sleep=self._sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                etag = self._storage.upload_part(session.object_key, session.upload_id, part_number, chunk)
        with self._lock:
            session.parts[part_number] = _CommittedPart(etag=etag, size=len(chunk))
        return etag

    def _abort_quietly(self, session: UploadSession) -> None:
        try:
            self.abort_upload(upload_id=session.upload_id, object_key=session.object_key)
        except (ApiError, ObjectStorageError) as exc:
            logger.warning(
                "upload.abort_failed upload_id=%s object_key=%s reason=%s",
                session.upload_id,
                session.object_key,
                exc.payload.code if isinstance(exc, ApiError) else type(exc).__name__,
            )

    def _failed(self, source: UploadSource, message: str) -> FileUploadOutcome:
        logger.warning("upload.file_failed object_key=%s reason=%s", source.object_key, message)
        publish_safely(
            self._sink,
            "upload.file.failed",
            {"file_name": source.file_name, "object_key": source.object_key, "error": message},
        )
        return FileUploadOutcome(
            file_name=source.file_name,
            object_key=source.object_key,
            success=False,
            error=message,
        )

    def _session(self, upload_id: str, object_key: str) -> UploadSession:
        with self._lock:
            session = self._sessions.get(upload_id)
        if session is None or session.object_key != object_key:
            raise not_found()
        return session
