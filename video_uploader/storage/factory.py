from __future__ import annotations

import logging

from video_uploader.config import (
    AWS_ACCESS_KEY_ID,
    AWS_SECRET_ACCESS_KEY,
    S3_BUCKET,
    S3_ENDPOINT_URL,
    S3_REGION,
    STORAGE_BACKEND,
    STORAGE_MIN_PART_SIZE,
    UPLOAD_DIR,
)
from video_uploader.storage.base import ObjectStore

logger = logging.getLogger("video_uploader.storage")


def get_object_store(backend: str = STORAGE_BACKEND) -> ObjectStore:
    if backend == "s3":
        from video_uploader.storage.s3 import S3ObjectStore

        logger.info("event=storage_selected backend=s3 bucket=%s endpoint=%s", S3_BUCKET, S3_ENDPOINT_URL)
        return S3ObjectStore(
            S3_BUCKET,
            region=S3_REGION,
            endpoint_url=S3_ENDPOINT_URL,
            access_key_id=AWS_ACCESS_KEY_ID,
            secret_access_key=AWS_SECRET_ACCESS_KEY,
        )
    if backend != "local":
        raise ValueError(f"Unknown STORAGE_BACKEND {backend!r}; expected 'local' or 's3'")
    from video_uploader.storage.local import LocalObjectStore

    logger.info("event=storage_selected backend=local root=%s", UPLOAD_DIR)
    return LocalObjectStore(UPLOAD_DIR, min_part_size=STORAGE_MIN_PART_SIZE)
