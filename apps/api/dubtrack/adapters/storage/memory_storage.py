"""Process-local object storage used for development and tests."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import hashlib
import threading
from uuid import uuid4

from dubtrack.adapters.storage.base import NoSuchUploadError, ObjectStorage, ObjectStorageError


@dataclass(slots=True)
class _PendingUpload:
    key: str
    content_type: str
    parts: dict[int, bytes] = field(default_factory=dict)


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'


class InMemoryObjectStorage(ObjectStorage):
    """Mimics S3 multipart semantics closely enough for the upload coordinator."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self._uploads: dict[str, _PendingUpload] = {}
        self._lock = threading.Lock()

    def create_multipart_upload(self, key: str, content_type: str) -> str:
        upload_id = uuid4().hex
        with self._lock:
            self._uploads[upload_id] = _PendingUpload(key=key, content_type=content_type)
        return upload_id

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        with self._lock:
            upload = self._pending(key, upload_id)
            upload.parts[part_number] = bytes(data)
        return _etag(data)

    def complete_multipart_upload(self, key: str, upload_id: str, parts: Sequence[tuple[int, str]]) -> None:
        with self._lock:
            upload = self._pending(key, upload_id)
            chunks = []
            for part_number, etag in parts:
                data = upload.parts.get(part_number)
                if data is None or _etag(data) != etag:
                    raise ObjectStorageError(f"Part {part_number} does not match a stored part")
                chunks.append(data)
            self.objects[key] = b"".join(chunks)
            self.content_types[key] = upload.content_type
            del self._uploads[upload_id]

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        with self._lock:
            self._uploads.pop(upload_id, None)

    def get_object(self, key: str) -> bytes:
        with self._lock:
            if key not in self.objects:
                raise ObjectStorageError(f"No such key: {key}")
            return self.objects[key]

    def delete_object(self, key: str) -> None:
        with self._lock:
            self.objects.pop(key, None)
            self.content_types.pop(key, None)

    def pending_upload_ids(self) -> list[str]:
        with self._lock:
            return list(self._uploads)

    def _pending(self, key: str, upload_id: str) -> _PendingUpload:
        upload = self._uploads.get(upload_id)
        if upload is None or upload.key != key:
            raise NoSuchUploadError(f"No such upload: {upload_id}")
        return upload
