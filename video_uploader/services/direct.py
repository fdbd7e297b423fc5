from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from typing import Optional

from video_uploader.config import DIRECT_UPLOAD_LIMIT
from video_uploader.core.exceptions import BackendError, PayloadTooLargeError, ValidationError
from video_uploader.core.metrics import metrics
from video_uploader.models import Upload
from video_uploader.services.coordinator import DEFAULT_CONTENT_TYPE, build_object_key
from video_uploader.services.recorder import MetadataRecorder
from video_uploader.storage.base import ObjectStore

logger = logging.getLogger("video_uploader.direct")


def _too_large(limit: int) -> PayloadTooLargeError:
    return PayloadTooLargeError(
        f"File too large for direct upload. Maximum is {limit / (1024 * 1024):.1f} MB; use multipart upload."
    )


async def _limited(body: AsyncIterator[bytes], limit: int) -> AsyncIterator[bytes]:
    received = 0
    async for chunk in body:
        received += len(chunk)
        if received > limit:
            raise _too_large(limit)
        yield chunk


class DirectUploader:
    """Single-request upload for files at or below the direct-upload limit."""

    def __init__(self, object_store: ObjectStore, recorder: MetadataRecorder, *, limit: int = DIRECT_UPLOAD_LIMIT) -> None:
        self.object_store = object_store
        self.recorder = recorder
        self.limit = limit

    async def upload(
        self,
        file_name: Optional[str],
        content_type: Optional[str],
        body: AsyncIterator[bytes],
        *,
        declared_size: Optional[int] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        uploader_id: Optional[str] = None,
    ) -> Upload:
        if not file_name:
            raise ValidationError("x-file-name header required")
        if declared_size is not None and declared_size > self.limit:
            logger.warning(
                "event=upload_rejected reason=max_size filename=%s size_bytes=%s limit_bytes=%s",
                file_name,
                declared_size,
                self.limit,
            )
            raise _too_large(self.limit)

        content_type = content_type or DEFAULT_CONTENT_TYPE
        file_id = str(uuid.uuid4())
        object_key = build_object_key(file_id, file_name)
        try:
            size = await self.object_store.put_object(
                object_key,
                _limited(body, self.limit),
                content_type,
                metadata={"original-name": file_name, "file-id": file_id},
            )
        except BackendError as exc:
            metrics.record_failure()
            raise BackendError("Upload failed", detail=exc.detail or exc.message) from exc

        record = self.recorder.record(
            file_id=file_id,
            file_name=file_name,
            file_size=size,
            object_key=object_key,
            content_type=content_type,
            ip=ip,
            user_agent=user_agent,
            uploader_id=uploader_id,
        )
        metrics.record_upload(size)
        logger.info(
            "event=upload_success file_id=%s object_key=%s size_bytes=%s content_type=%s",
            file_id,
            object_key,
            size,
            content_type,
        )
        return record
