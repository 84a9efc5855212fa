"""Object storage interfaces."""

from abc import ABC, abstractmethod
from collections.abc import Sequence


class ObjectStorageError(Exception):
    """Raised when the storage backend rejects an operation."""


class StorageUnavailableError(ObjectStorageError):
    """Raised when the storage backend cannot be reached; callers may retry."""


class NoSuchUploadError(ObjectStorageError):
    """Raised when a multipart upload id is unknown to the backend."""


class ObjectStorage(ABC):
    """Multipart-capable object store."""

    @abstractmethod
    def create_multipart_upload(self, key: str, content_type: str) -> str:
        """Start a multipart upload and return its upload id."""

    @abstractmethod
    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """Store one part and return its ETag."""

    @abstractmethod
    def complete_multipart_upload(self, key: str, upload_id: str, parts: Sequence[tuple[int, str]]) -> None:
        """Assemble ``(part_number, etag)`` parts, already in ascending order, into the object."""

    @abstractmethod
    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Release parts of an unfinished upload."""

    @abstractmethod
    def get_object(self, key: str) -> bytes:
        """Return the stored object body."""

    @abstractmethod
    def delete_object(self, key: str) -> None:
        """Delete one object; deleting a missing key succeeds."""


__all__ = ["NoSuchUploadError", "ObjectStorage", "ObjectStorageError", "StorageUnavailableError"]
