from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field


class Upload(SQLModel, table=True):
    __tablename__ = "uploads"

    id: str = Field(primary_key=True)
    file_name: str
    file_size: int
    object_key: str
    content_type: str = Field(default="application/octet-stream")
    ip: Optional[str] = Field(default=None, nullable=True)
    user_agent: Optional[str] = Field(default=None, nullable=True)
    uploader_id: Optional[str] = Field(default=None, nullable=True)  # JWT subject, when the caller had one
    status: str = Field(default="completed", index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
