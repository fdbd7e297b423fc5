from __future__ import annotations

from collections.abc import AsyncIterator, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class PartAck:
    """Backend receipt for one uploaded part."""

    part_number: int
    etag: str
    size: int = 0


@dataclass
class StoredObject:
    size: int
    content_type: Optional[str] = None
    body: Iterator[bytes] = field(default_factory=lambda: iter(()))


class ObjectStore:
    """Multipart-capable object storage contract used by the coordinator.

    Every method is a coroutine. Implementations raise
    :class:`video_uploader.core.exceptions.BackendError` when the backend
    rejects a call; they never retry.
    """

    name = "base"

    async def put_object(
        self,
        key: str,
        body: AsyncIterator[bytes],
        content_type: str,
        metadata: Mapping[str, str] | None = None,
    ) -> int:
        """Store ``body`` under ``key`` in one call and return the byte count."""
        raise NotImplementedError

    async def create_multipart_upload(
        self, key: str, content_type: str, metadata: Mapping[str, str] | None = None
    ) -> str:
        """Open a multipart upload at ``key`` and return its upload id."""
        raise NotImplementedError

    async def upload_part(
        self, key: str, upload_id: str, part_number: int, body: AsyncIterator[bytes]
    ) -> PartAck:
        raise NotImplementedError

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: Sequence[PartAck]
    ) -> int:
        """Assemble ``parts`` (ascending part number) into one object; return its size."""
        raise NotImplementedError

    async def get_object(self, key: str) -> Optional[StoredObject]:
        raise NotImplementedError

    def reclaim_abandoned(self, older_than_seconds: int) -> int:
        """Drop staged multipart data older than the cutoff.

        Remote backends leave this to their own lifecycle rules.
        """
        return 0


async def read_body(body: AsyncIterator[bytes]) -> bytes:
    chunks = []
    async for chunk in body:
        if chunk:
            chunks.append(chunk)
    return b"".join(chunks)
