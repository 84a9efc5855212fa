"""Multipart upload API schemas."""

from pydantic import BaseModel, Field

MAX_PART_NUMBER = 10_000


class InitUploadRequest(BaseModel):
    file_name: str = Field(min_length=1)
    content_type: str = Field(min_length=1)
    object_key: str | None = None


class InitUploadResponse(BaseModel):
    upload_id: str
    object_key: str


class UploadPartResponse(BaseModel):
    part_number: int
    etag: str


class CompletedPart(BaseModel):
    part_number: int = Field(ge=1, le=MAX_PART_NUMBER)
    etag: str = Field(min_length=1)


class CompleteUploadRequest(BaseModel):
    upload_id: str = Field(min_length=1)
    object_key: str = Field(min_length=1)
    parts: list[CompletedPart] = Field(min_length=1)


class CompleteUploadResponse(BaseModel):
    object_key: str
    size: int


class AbortUploadRequest(BaseModel):
    upload_id: str = Field(min_length=1)
    object_key: str = Field(min_length=1)


class AbortUploadResponse(BaseModel):
    upload_id: str
    aborted: bool
