from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UploadSession(BaseModel):
    """In-flight multipart upload, keyed by ``file_id``."""

    file_id: str
    upload_id: str
    object_key: str
    file_name: str
    content_type: str = "application/octet-stream"
    uploader_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class MultipartInitRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: Optional[str] = Field(default=None, alias="fileName")
    content_type: Optional[str] = Field(default=None, alias="contentType")


class CompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_id: Optional[str] = Field(default=None, alias="fileId")
