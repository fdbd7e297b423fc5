from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Iterator, Mapping, Sequence
from pathlib import Path
from typing import Optional

from video_uploader.core.exceptions import BackendError
from video_uploader.storage.base import ObjectStore, PartAck, StoredObject

logger = logging.getLogger("video_uploader.storage")

_READ_BLOCK = 1024 * 1024
_MANIFEST = "manifest.json"


def _rejected(code: str, message: str) -> BackendError:
    return BackendError(code, detail=f"{code}: {message}")


class LocalObjectStore(ObjectStore):
    """Filesystem backend with S3-style multipart semantics.

    Objects live under ``<root>/objects/<key>``. Each multipart upload is
    staged in ``<root>/.multipart/<upload_id>/`` until it is completed.
    """

    name = "local"

    def __init__(self, root: str, min_part_size: int = 5 * 1024 * 1024) -> None:
        self.root = Path(root).resolve()
        self.objects_root = self.root / "objects"
        self.staging_root = self.root / ".multipart"
        self.min_part_size = max(min_part_size, 0)
        self.objects_root.mkdir(parents=True, exist_ok=True)
        self.staging_root.mkdir(parents=True, exist_ok=True)

    def _object_path(self, key: str) -> Path:
        path = (self.objects_root / key).resolve()
        try:
            path.relative_to(self.objects_root)
        except ValueError:
            logger.warning("event=object_key_rejected key=%s", key)
            raise _rejected("InvalidKey", "object key escapes the storage root") from None
        return path

    def _staging_dir(self, upload_id: str) -> Path:
        path = (self.staging_root / upload_id).resolve()
        if path.parent != self.staging_root:
            logger.warning("event=upload_id_rejected upload_id=%s", upload_id)
            raise _rejected("NoSuchUpload", "the specified upload does not exist")
        return path

    async def _write_stream(self, path: Path, body: AsyncIterator[bytes]) -> tuple[int, str]:
        path.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.md5()
        size = 0
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        fh = open(tmp_path, "wb")
        try:
            async for chunk in body:
                if not chunk:
                    continue
                digest.update(chunk)
                size += len(chunk)
                await asyncio.to_thread(fh.write, chunk)
        except BaseException:
            fh.close()
            tmp_path.unlink(missing_ok=True)
            raise
        fh.close()
        os.replace(tmp_path, path)
        return size, digest.hexdigest()

    async def put_object(
        self,
        key: str,
        body: AsyncIterator[bytes],
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> int:
        path = self._object_path(key)
        size, _ = await self._write_stream(path, body)
        return size

    async def create_multipart_upload(
        self, key: str, content_type: str, metadata: Mapping[str, str] | None = None
    ) -> str:
        self._object_path(key)
        upload_id = uuid.uuid4().hex
        staging = self._staging_dir(upload_id)
        staging.mkdir(parents=True)
        manifest = {
            "key": key,
            "content_type": content_type,
            "metadata": dict(metadata or {}),
            "initiated": time.time(),
        }
        (staging / _MANIFEST).write_text(json.dumps(manifest), encoding="utf-8")
        return upload_id

    def _load_manifest(self, key: str, upload_id: str) -> dict:
        manifest_path = self._staging_dir(upload_id) / _MANIFEST
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("event=multipart_missing upload_id=%s key=%s", upload_id, key)
            raise _rejected("NoSuchUpload", "the specified upload does not exist") from None
        if manifest.get("key") != key:
            logger.warning(
                "event=multipart_key_mismatch upload_id=%s key=%s expected_key=%s",
                upload_id,
                key,
                manifest.get("key"),
            )
            raise _rejected("NoSuchUpload", "the specified upload does not exist")
        return manifest

    async def upload_part(
        self, key: str, upload_id: str, part_number: int, body: AsyncIterator[bytes]
    ) -> PartAck:
        self._load_manifest(key, upload_id)
        part_path = self._staging_dir(upload_id) / f"{part_number:05d}.part"
        size, etag = await self._write_stream(part_path, body)
        return PartAck(part_number=part_number, etag=etag, size=size)

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[PartAck]
    ) -> int:
        self._load_manifest(key, upload_id)
        if not parts:
            raise _rejected("MalformedXML", "at least one part is required")
        staging = self._staging_dir(upload_id)

        part_paths = []
        previous = 0
        for index, part in enumerate(parts):
            if part.part_number <= previous:
                raise _rejected("InvalidPartOrder", "part numbers must be listed in ascending order")
            previous = part.part_number
            part_path = staging / f"{part.part_number:05d}.part"
            if not part_path.is_file():
                raise _rejected("InvalidPart", f"part {part.part_number} was never uploaded")
            size = part_path.stat().st_size
            if index < len(parts) - 1 and size < self.min_part_size:
                raise _rejected(
                    "EntityTooSmall",
                    f"part {part.part_number} is {size} bytes; minimum is {self.min_part_size}",
                )
            part_paths.append((part, part_path))

        await asyncio.to_thread(self._verify_etags, part_paths)
        total = await asyncio.to_thread(self._assemble, self._object_path(key), [p for _, p in part_paths])
        shutil.rmtree(staging, ignore_errors=True)
        logger.info(
            "event=multipart_assembled key=%s upload_id=%s parts=%s size_bytes=%s",
            key,
            upload_id,
            len(parts),
            total,
        )
        return total

    @staticmethod
    def _verify_etags(part_paths: list[tuple[PartAck, Path]]) -> None:
        for part, path in part_paths:
            digest = hashlib.md5()
            with open(path, "rb") as fh:
                for block in iter(lambda: fh.read(_READ_BLOCK), b""):
                    digest.update(block)
            if digest.hexdigest() != part.etag.strip('"'):
                raise _rejected("InvalidPart", f"etag mismatch for part {part.part_number}")

    @staticmethod
    def _assemble(target: Path, sources: list[Path]) -> int:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        total = 0
        with open(tmp_path, "wb") as out:
            for source in sources:
                with open(source, "rb") as fh:
                    for block in iter(lambda: fh.read(_READ_BLOCK), b""):
                        out.write(block)
                        total += len(block)
        os.replace(tmp_path, target)
        return total

    async def get_object(self, key: str) -> Optional[StoredObject]:
        path = self._object_path(key)
        if not path.is_file():
            return None
        return StoredObject(size=path.stat().st_size, body=_iter_file(path))

    @staticmethod
    def _last_activity(staging: Path) -> float:
        """Newest mtime among the staging dir and its files; every part write bumps it."""
        latest = staging.stat().st_mtime
        for entry in staging.iterdir():
            try:
                latest = max(latest, entry.stat().st_mtime)
            except FileNotFoundError:
                continue
        return latest

    def reclaim_abandoned(self, older_than_seconds: int) -> int:
        """Drop staging dirs idle for longer than ``older_than_seconds``.

        Idle time runs from the last part write, matching the session TTL
        which is refreshed on every acknowledged part.
        """
        cutoff = time.time() - older_than_seconds
        reclaimed = 0
        for staging in self.staging_root.iterdir():
            if not staging.is_dir():
                continue
            try:
                last_activity = self._last_activity(staging)
            except FileNotFoundError:
                continue
            if last_activity < cutoff:
                shutil.rmtree(staging, ignore_errors=True)
                reclaimed += 1
                logger.info("event=multipart_reclaimed upload_id=%s", staging.name)
        return reclaimed


def _iter_file(path: Path) -> Iterator[bytes]:
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(_READ_BLOCK), b""):
            yield block
