"""Object storage adapters."""

from .base import (
    NoSuchUploadError,
    ObjectStorage,
    ObjectStorageError,
    StorageUnavailableError,
)
from .memory_storage import InMemoryObjectStorage
from .s3_storage import S3ObjectStorage

__all__ = [
    "InMemoryObjectStorage",
    "NoSuchUploadError",
    "ObjectStorage",
    "ObjectStorageError",
    "S3ObjectStorage",
    "StorageUnavailableError",
]
