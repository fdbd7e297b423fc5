from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from video_uploader.core.exceptions import BackendError
from video_uploader.storage.base import ObjectStore, PartAck, StoredObject, read_body

logger = logging.getLogger("video_uploader.storage")

# Direct uploads are spooled to disk past this size before handing them to boto3.
_SPOOL_MAX_MEMORY = 8 * 1024 * 1024


def _backend_error(operation: str, exc: Exception) -> BackendError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        reason = f"{error.get('Code', 'ClientError')}: {error.get('Message', '')}".rstrip(": ")
    else:
        reason = str(exc)
    logger.error("event=s3_call_failed operation=%s error=%s", operation, reason)
    return BackendError(f"Storage backend rejected {operation}", detail=reason)


class S3ObjectStore(ObjectStore):
    """S3-compatible backend (AWS S3, Cloudflare R2, MinIO, Backblaze B2)."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        client=None,
    ) -> None:
        if not bucket:
            raise ValueError("S3_BUCKET must be set when STORAGE_BACKEND=s3")
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            region_name=region,
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4"),
        )

    async def _call(self, operation: str, **params):
        method = getattr(self.client, operation)
        try:
            return await asyncio.to_thread(method, **params)
        except (ClientError, BotoCoreError) as exc:
            raise _backend_error(operation, exc) from exc

    async def put_object(
        self,
        key: str,
        body: AsyncIterator[bytes],
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> int:
        size = 0
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_MEMORY) as spool:
            async for chunk in body:
                if chunk:
                    spool.write(chunk)
                    size += len(chunk)
            spool.seek(0)
            try:
                await asyncio.to_thread(
                    self.client.upload_fileobj,
                    spool,
                    self.bucket,
                    key,
                    ExtraArgs={"ContentType": content_type, "Metadata": dict(metadata or {})},
                )
            except (ClientError, BotoCoreError) as exc:
                raise _backend_error("put_object", exc) from exc
        return size

    async def create_multipart_upload(
        self, key: str, content_type: str, metadata: Mapping[str, str] | None = None
    ) -> str:
        response = await self._call(
            "create_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
            Metadata=dict(metadata or {}),
        )
        return response["UploadId"]

    async def upload_part(
        self, key: str, upload_id: str, part_number: int, body: AsyncIterator[bytes]
    ) -> PartAck:
        data = await read_body(body)
        response = await self._call(
            "upload_part",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return PartAck(part_number=part_number, etag=response["ETag"], size=len(data))

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[PartAck]
    ) -> int:
        await self._call(
            "complete_multipart_upload",
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": part.part_number, "ETag": part.etag} for part in parts]
            },
        )
        head = await self._call("head_object", Bucket=self.bucket, Key=key)
        return int(head["ContentLength"])

    async def get_object(self, key: str) -> Optional[StoredObject]:
        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise _backend_error("get_object", exc) from exc
        except BotoCoreError as exc:
            raise _backend_error("get_object", exc) from exc
        return StoredObject(
            size=int(response["ContentLength"]),
            content_type=response.get("ContentType"),
            body=response["Body"].iter_chunks(),
        )
