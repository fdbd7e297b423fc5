"""Client-side upload driver.

Picks direct or multipart upload by file size, drives the request sequence
against the upload API and reports integer progress (0-100) per file.
Failures are per file: one file's error never stops the rest of a batch.
"""
from __future__ import annotations

import asyncio
import logging
import math
import mimetypes
import os
import uuid
from urllib.parse import quote
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

logger = logging.getLogger("video_uploader.client")

CHUNK_SIZE = 50 * 1024 * 1024
DIRECT_UPLOAD_LIMIT = 95 * 1024 * 1024
MAX_PARTS = 10000
MAX_FILE_SIZE = 5 * 1024 * 1024 * 1024
STREAM_BLOCK_SIZE = 1024 * 1024

ALLOWED_TYPES = {
    "video/mp4",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/webm",
}
ALLOWED_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm"}

ProgressCallback = Callable[[int], None]


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class UploadedFile:
    id: str
    name: str
    size: int
    path: str
    content_type: str = "application/octet-stream"
    progress: int = 0
    status: UploadStatus = UploadStatus.PENDING
    error: Optional[str] = None
    file_id: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.status in (UploadStatus.SUCCESS, UploadStatus.ERROR)


class UploadFailed(Exception):
    """A step of a file's upload sequence failed; the message is user-facing."""


def choose_strategy(size: int, limit: int = DIRECT_UPLOAD_LIMIT) -> str:
    """``multipart`` only when ``size`` is strictly above ``limit``."""
    return "multipart" if size > limit else "direct"


def part_ranges(size: int, chunk_size: int = CHUNK_SIZE) -> list[tuple[int, int, int]]:
    """``(part_number, start, end)`` byte ranges, part numbers starting at 1."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    total_parts = math.ceil(size / chunk_size)
    if total_parts > MAX_PARTS:
        raise ValueError(
            f"{size} bytes in {chunk_size}-byte chunks needs {total_parts} parts; the limit is {MAX_PARTS}"
        )
    return [
        (part_number, (part_number - 1) * chunk_size, min(part_number * chunk_size, size))
        for part_number in range(1, total_parts + 1)
    ]


def validate_video_file(name: str, size: int, content_type: Optional[str] = None) -> tuple[bool, Optional[str]]:
    if size <= 0:
        return False, "File is empty"
    if size > MAX_FILE_SIZE:
        return False, "File size exceeds 5GB limit"
    extension = os.path.splitext(name.lower())[1]
    if content_type not in ALLOWED_TYPES and extension not in ALLOWED_EXTENSIONS:
        return False, "File type not supported. Please upload MP4, MOV, AVI, MKV, or WebM files."
    return True, None


def _read_range(path: str, start: int, end: int) -> bytes:
    with open(path, "rb") as fh:
        fh.seek(start)
        return fh.read(end - start)


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"{response.status_code} {response.reason_phrase}".strip()


class UploadDriver:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        token: Optional[str] = None,
        direct_upload_limit: int = DIRECT_UPLOAD_LIMIT,
        chunk_size: int = CHUNK_SIZE,
        max_attempts: int = 3,
        backoff: float = 0.5,
        part_timeout: float = 300.0,
        concurrency: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.token = token
        self.direct_upload_limit = direct_upload_limit
        self.chunk_size = chunk_size
        self.max_attempts = max(max_attempts, 1)
        self.backoff = backoff
        self.part_timeout = part_timeout
        self.concurrency = max(concurrency, 1)
        self._sleep = sleep

    def _headers(self, extra: Optional[dict] = None) -> dict:
        headers = dict(extra or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def upload(self, item: UploadedFile, on_progress: Optional[ProgressCallback] = None) -> str:
        """Upload one file and return the server-assigned file id."""
        report = on_progress or (lambda pct: None)
        if choose_strategy(item.size, self.direct_upload_limit) == "multipart":
            return await self.upload_multipart(item, report)
        return await self.upload_direct(item, report)

    async def upload_direct(self, item: UploadedFile, report: ProgressCallback) -> str:
        async def body() -> AsyncIterator[bytes]:
            sent = 0
            with open(item.path, "rb") as fh:
                while True:
                    block = await asyncio.to_thread(fh.read, STREAM_BLOCK_SIZE)
                    if not block:
                        break
                    sent += len(block)
                    yield block
                    report(round(sent / item.size * 100) if item.size else 100)

        headers = self._headers(
            {
                "x-file-name": quote(item.name),
                "Content-Type": item.content_type or "application/octet-stream",
                "Content-Length": str(item.size),
            }
        )
        try:
            response = await self.client.post("/upload", content=body(), headers=headers)
        except httpx.TransportError as exc:
            raise UploadFailed(f"Network error: {exc}") from exc
        if not response.is_success:
            raise UploadFailed(f"Upload failed: {response.status_code} {_error_text(response)}")
        return response.json()["fileId"]

    async def upload_multipart(self, item: UploadedFile, report: ProgressCallback) -> str:
        ranges = part_ranges(item.size, self.chunk_size)

        try:
            init = await self.client.post(
                "/upload/multipart",
                json={"fileName": item.name, "contentType": item.content_type or "application/octet-stream"},
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise UploadFailed(f"Failed to init multipart upload: {exc}") from exc
        if not init.is_success:
            raise UploadFailed(f"Failed to init multipart upload: {_error_text(init)}")
        file_id = init.json()["fileId"]
        item.file_id = file_id

        uploaded = 0
        pending = iter(ranges)
        failures: list[Exception] = []

        async def worker() -> None:
            nonlocal uploaded
            for part_number, start, end in pending:
                if failures:
                    return
                try:
                    data = await asyncio.to_thread(_read_range, item.path, start, end)
                    await self.upload_part(file_id, part_number, data)
                except Exception as exc:
                    failures.append(exc)
                    return
                uploaded += end - start
                report(round(uploaded / item.size * 100))

        await asyncio.gather(*(worker() for _ in range(min(self.concurrency, len(ranges)))))
        if failures:
            first = failures[0]
            if isinstance(first, UploadFailed):
                raise first
            raise UploadFailed(f"Failed to read {item.name}: {first}") from first

        try:
            complete = await self.client.post(
                "/upload/complete", json={"fileId": file_id}, headers=self._headers()
            )
        except httpx.TransportError as exc:
            raise UploadFailed(f"Failed to complete multipart upload: {exc}") from exc
        if not complete.is_success:
            raise UploadFailed(f"Failed to complete multipart upload: {_error_text(complete)}")
        return file_id

    async def upload_part(self, file_id: str, part_number: int, data: bytes) -> dict:
        """PUT one part, retrying transport errors and 5xx with exponential backoff."""
        last_error = "unknown error"
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.client.put(
                    "/upload/part",
                    params={"fileId": file_id, "partNumber": part_number},
                    content=data,
                    headers=self._headers({"Content-Type": "application/octet-stream"}),
                    timeout=self.part_timeout,
                )
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            else:
                if response.is_success:
                    return response.json()
                if response.status_code < 500:
                    raise UploadFailed(f"Failed to upload part {part_number}: {_error_text(response)}")
                last_error = _error_text(response)

            if attempt < self.max_attempts:
                delay = self.backoff * 2 ** (attempt - 1)
                logger.warning(
                    "event=part_retry file_id=%s part_number=%s attempt=%s delay_seconds=%s error=%s",
                    file_id,
                    part_number,
                    attempt,
                    delay,
                    last_error,
                )
                await self._sleep(delay)

        logger.error(
            "event=part_give_up file_id=%s part_number=%s attempts=%s error=%s",
            file_id,
            part_number,
            self.max_attempts,
            last_error,
        )
        raise UploadFailed(
            f"Failed to upload part {part_number} after {self.max_attempts} attempts: {last_error}"
        )


class UploadQueue:
    """Batch of selected files, uploaded one after another."""

    def __init__(self, driver: UploadDriver) -> None:
        self.driver = driver
        self.files: list[UploadedFile] = []

    def add(self, path: str, *, name: Optional[str] = None, content_type: Optional[str] = None) -> UploadedFile:
        name = name or os.path.basename(path)
        size = os.path.getsize(path)
        content_type = content_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
        valid, error = validate_video_file(name, size, content_type)
        if not valid:
            raise ValueError(error)
        item = UploadedFile(id=uuid.uuid4().hex, name=name, size=size, path=path, content_type=content_type)
        self.files.append(item)
        return item

    def pending(self) -> list[UploadedFile]:
        return [item for item in self.files if item.status == UploadStatus.PENDING]

    async def start(self) -> list[UploadedFile]:
        for item in self.pending():
            item.status = UploadStatus.UPLOADING
            item.progress = 0

            def _progress(pct: int, item: UploadedFile = item) -> None:
                item.progress = pct

            try:
                item.file_id = await self.driver.upload(item, _progress)
            except (UploadFailed, ValueError, OSError) as exc:
                item.status = UploadStatus.ERROR
                item.error = str(exc) or "Upload failed"
                logger.warning("event=file_failed name=%s error=%s", item.name, item.error)
                continue
            item.status = UploadStatus.SUCCESS
            item.progress = 100
            item.error = None
            logger.info("event=file_uploaded name=%s file_id=%s", item.name, item.file_id)
        return self.files

    def remove(self, item_id: str) -> None:
        self.files = [item for item in self.files if item.id != item_id]

    def clear_completed(self) -> None:
        self.files = [item for item in self.files if not item.terminal]
