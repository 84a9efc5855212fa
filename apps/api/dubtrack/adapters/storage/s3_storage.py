"""S3-compatible object storage (AWS S3, Cloudflare R2, MinIO)."""

from __future__ import annotations

from collections.abc import Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from dubtrack.adapters.storage.base import (
    NoSuchUploadError,
    ObjectStorage,
    ObjectStorageError,
    StorageUnavailableError,
)

_UNAVAILABLE_CODES = frozenset({"SlowDown", "ServiceUnavailable", "InternalError", "RequestTimeout", "503", "500"})


class S3ObjectStorage(ObjectStorage):
    def __init__(
        self,
        *,
        bucket: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        self._bucket = bucket
        self._endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._region = region
        self._client = None

    @property
    def client(self):
        """Lazy initialization of the S3 client."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self._endpoint_url,
                aws_access_key_id=self._access_key_id,
                aws_secret_access_key=self._secret_access_key,
                region_name=self._region,
                config=Config(signature_version="s3v4", retries={"max_attempts": 1, "mode": "standard"}),
            )
        return self._client

    def create_multipart_upload(self, key: str, content_type: str) -> str:
        response = self._call("create_multipart_upload", Bucket=self._bucket, Key=key, ContentType=content_type)
        return response["UploadId"]

    def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        response = self._call(
            "upload_part",
            Bucket=self._bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    def complete_multipart_upload(self, key: str, upload_id: str, parts: Sequence[tuple[int, str]]) -> None:
        self._call(
            "complete_multipart_upload",
            Bucket=self._bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": [{"PartNumber": number, "ETag": etag} for number, etag in parts]},
        )

    def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        try:
            self._call("abort_multipart_upload", Bucket=self._bucket, Key=key, UploadId=upload_id)
        except NoSuchUploadError:
            return

    def get_object(self, key: str) -> bytes:
        response = self._call("get_object", Bucket=self._bucket, Key=key)
        return response["Body"].read()

    def delete_object(self, key: str) -> None:
        self._call("delete_object", Bucket=self._bucket, Key=key)

    def _call(self, operation: str, **kwargs):
        try:
            return getattr(self.client, operation)(**kwargs)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code == "NoSuchUpload":
                raise NoSuchUploadError(str(exc)) from exc
            if code in _UNAVAILABLE_CODES:
                raise StorageUnavailableError(str(exc)) from exc
            raise ObjectStorageError(str(exc)) from exc
        except BotoCoreError as exc:
            raise StorageUnavailableError(str(exc)) from exc
