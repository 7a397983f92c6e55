from datetime import datetime

from pydantic import BaseModel, Field


class PrepareRequest(BaseModel):
    name: str = Field(min_length=1)
    content_type: str = Field(default="application/octet-stream", min_length=1)


class PrepareResponse(BaseModel):
    id: str
    state: str


class AppendChunkResponse(BaseModel):
    id: str
    chunk_index: int
    state: str


class FinalizeResponse(BaseModel):
    id: str
    state: str
    size_bytes: int


class UploadStatusResponse(BaseModel):
    id: str
    name: str
    content_type: str
    state: str
    chunk_indexes: list[int]
    size_bytes: int | None = None
    created_at: datetime
    finalized_at: datetime | None = None


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
