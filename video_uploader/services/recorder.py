from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlmodel import Session, select

from video_uploader.models import Upload

COMPLETED = "completed"


class MetadataRecorder:
    """Insert-only store of finished uploads, plus the listing queries over it."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        *,
        file_id: str,
        file_name: str,
        file_size: int,
        object_key: str,
        content_type: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        uploader_id: Optional[str] = None,
    ) -> Upload:
        now = datetime.utcnow()
        record = Upload(
            id=file_id,
            file_name=file_name,
            file_size=file_size,
            object_key=object_key,
            content_type=content_type,
            ip=ip,
            user_agent=user_agent,
            uploader_id=uploader_id,
            status=COMPLETED,
            created_at=now,
            updated_at=now,
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def get_completed(self, file_id: str) -> Optional[Upload]:
        record = self.session.get(Upload, file_id)
        if record is None or record.status != COMPLETED:
            return None
        return record

    def list_uploads(self, status: str = COMPLETED, limit: int = 50, offset: int = 0) -> tuple[list[Upload], int]:
        rows = self.session.exec(
            select(Upload)
            .where(Upload.status == status)
            .order_by(Upload.created_at.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        total = self.session.exec(select(func.count(Upload.id)).where(Upload.status == status)).one()
        return list(rows), int(total or 0)

    def storage_totals(self) -> dict[str, int]:
        total_files = self.session.exec(select(func.count(Upload.id))).one()
        total_bytes = self.session.exec(select(func.coalesce(func.sum(Upload.file_size), 0))).one()
        return {
            "total_files": int(total_files or 0),
            "total_bytes": int(total_bytes or 0),
        }
