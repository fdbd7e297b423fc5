"""Three-phase multipart upload protocol: init, part, complete.

Session state lives entirely in the session store, so any worker can serve
any request for a given ``file_id``. The coordinator never retries a backend
call; retry is the client's job.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from typing import Optional

from video_uploader.config import MAX_PARTS, SESSION_TTL_SECONDS
from video_uploader.core.exceptions import BackendError, NotFoundError, ValidationError
from video_uploader.core.metrics import metrics
from video_uploader.models import Upload
from video_uploader.schemas import UploadSession
from video_uploader.services.recorder import MetadataRecorder
from video_uploader.sessions import SessionStore
from video_uploader.storage.base import ObjectStore, PartAck

logger = logging.getLogger("video_uploader.coordinator")

DEFAULT_CONTENT_TYPE = "application/octet-stream"
SESSION_NOT_FOUND = "Multipart upload not found"


def build_object_key(file_id: str, file_name: str) -> str:
    safe_name = file_name.replace("/", "_").replace("\\", "_")
    return f"{file_id}/{safe_name}"


def parse_part_number(value) -> int:
    """Accept a positive integer (or its string form) no larger than MAX_PARTS."""
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise ValidationError("partNumber must be a positive integer")
    elif not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError("partNumber must be a positive integer")
    part_number = int(value)
    if part_number < 1 or part_number > MAX_PARTS:
        raise ValidationError(f"partNumber must be between 1 and {MAX_PARTS}")
    return part_number


class UploadCoordinator:
    def __init__(
        self,
        object_store: ObjectStore,
        session_store: SessionStore,
        recorder: Optional[MetadataRecorder] = None,
        *,
        session_ttl: int = SESSION_TTL_SECONDS,
    ) -> None:
        self.object_store = object_store
        self.session_store = session_store
        self.recorder = recorder
        self.session_ttl = session_ttl

    async def _require_session(self, file_id: Optional[str]) -> UploadSession:
        session = await self.session_store.get(file_id) if file_id else None
        if session is None:
            raise NotFoundError(SESSION_NOT_FOUND)
        return session

    async def init(
        self,
        file_name: Optional[str],
        content_type: Optional[str] = None,
        *,
        uploader_id: Optional[str] = None,
    ) -> UploadSession:
        if not file_name:
            raise ValidationError("fileName required")
        content_type = content_type or DEFAULT_CONTENT_TYPE
        file_id = str(uuid.uuid4())
        object_key = build_object_key(file_id, file_name)

        try:
            upload_id = await self.object_store.create_multipart_upload(
                object_key,
                content_type,
                metadata={"original-name": file_name, "file-id": file_id},
            )
        except BackendError as exc:
            metrics.record_failure()
            raise BackendError("Failed to init multipart upload", detail=exc.detail or exc.message) from exc

        session = UploadSession(
            file_id=file_id,
            upload_id=upload_id,
            object_key=object_key,
            file_name=file_name,
            content_type=content_type,
            uploader_id=uploader_id,
        )
        await self.session_store.create(session, self.session_ttl)
        metrics.record_session_opened()
        logger.info(
            "event=multipart_init file_id=%s object_key=%s content_type=%s",
            file_id,
            object_key,
            content_type,
        )
        return session

    async def upload_part(
        self, file_id: Optional[str], part_number, body: AsyncIterator[bytes]
    ) -> PartAck:
        if not file_id or part_number in (None, ""):
            raise ValidationError("fileId and partNumber required")
        part_number = parse_part_number(part_number)
        session = await self._require_session(file_id)

        try:
            ack = await self.object_store.upload_part(
                session.object_key, session.upload_id, part_number, body
            )
        except BackendError as exc:
            metrics.record_failure()
            raise BackendError("Part upload failed", detail=exc.detail or exc.message) from exc

        if not await self.session_store.add_part(file_id, ack, self.session_ttl):
            logger.warning(
                "event=multipart_part_orphaned file_id=%s part_number=%s", file_id, part_number
            )
            raise NotFoundError(SESSION_NOT_FOUND)
        metrics.record_part()
        logger.info(
            "event=multipart_part file_id=%s part_number=%s size_bytes=%s",
            file_id,
            part_number,
            ack.size,
        )
        return ack

    async def list_parts(self, file_id: Optional[str]) -> tuple[UploadSession, list[PartAck]]:
        session = await self._require_session(file_id)
        return session, await self.session_store.list_parts(session.file_id)

    async def complete(
        self,
        file_id: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Upload:
        if not file_id:
            raise ValidationError("fileId required")
        if self.recorder is None:
            raise RuntimeError("UploadCoordinator.complete needs a MetadataRecorder")
        session = await self._require_session(file_id)
        parts = await self.session_store.list_parts(file_id)
        if not parts:
            raise ValidationError("No parts uploaded")

        try:
            size = await self.object_store.complete_multipart_upload(
                session.object_key, session.upload_id, parts
            )
        except BackendError as exc:
            metrics.record_failure()
            raise BackendError("Failed to complete upload", detail=exc.detail or exc.message) from exc

        record = self.recorder.record(
            file_id=session.file_id,
            file_name=session.file_name,
            file_size=size,
            object_key=session.object_key,
            content_type=session.content_type,
            ip=ip,
            user_agent=user_agent,
            uploader_id=session.uploader_id,
        )
        await self.session_store.delete(file_id)
        metrics.record_upload(size)
        logger.info(
            "event=multipart_complete file_id=%s parts=%s size_bytes=%s",
            file_id,
            len(parts),
            size,
        )
        return record
