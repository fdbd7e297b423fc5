from __future__ import annotations

import json
import logging
import threading
from time import monotonic
from typing import Callable, Dict, Optional, Tuple

from video_uploader.config import REDIS_URL
from video_uploader.schemas import UploadSession
from video_uploader.storage.base import PartAck

logger = logging.getLogger("video_uploader.sessions")


def session_key(file_id: str) -> str:
    return f"multipart:{file_id}"


def parts_key(file_id: str) -> str:
    return f"multipart:{file_id}:parts"


def _encode_part(part: PartAck) -> str:
    return json.dumps({"partNumber": part.part_number, "etag": part.etag, "size": part.size})


def _decode_part(raw) -> PartAck:
    data = json.loads(raw)
    return PartAck(part_number=int(data["partNumber"]), etag=data["etag"], size=int(data.get("size", 0)))


class SessionStore:
    """Expiring map from file id to multipart session state.

    Part acknowledgements are stored as independent entries keyed by
    ``(file_id, part_number)``, so concurrent part uploads for one file never
    overwrite each other. A repeated part number replaces the earlier entry.
    """

    async def create(self, session: UploadSession, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def get(self, file_id: str) -> Optional[UploadSession]:
        raise NotImplementedError

    async def add_part(self, file_id: str, part: PartAck, ttl_seconds: int) -> bool:
        """Record ``part`` and refresh the TTL; False when the session is gone."""
        raise NotImplementedError

    async def list_parts(self, file_id: str) -> list[PartAck]:
        """Acknowledged parts, ascending by part number."""
        raise NotImplementedError

    async def delete(self, file_id: str) -> None:
        raise NotImplementedError

    def purge_expired(self) -> int:
        return 0


class RedisSessionStore(SessionStore):
    def __init__(self, url: str = "", *, client=None) -> None:
        if client is None:
            import redis.asyncio as redis_asyncio

            client = redis_asyncio.from_url(url, decode_responses=True)
        self._redis = client

    async def create(self, session: UploadSession, ttl_seconds: int) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(parts_key(session.file_id))
            pipe.set(session_key(session.file_id), session.model_dump_json(), ex=ttl_seconds)
            await pipe.execute()

    async def get(self, file_id: str) -> Optional[UploadSession]:
        raw = await self._redis.get(session_key(file_id))
        if not raw:
            return None
        return UploadSession.model_validate_json(raw)

    async def add_part(self, file_id: str, part: PartAck, ttl_seconds: int) -> bool:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.expire(session_key(file_id), ttl_seconds)
            pipe.hset(parts_key(file_id), str(part.part_number), _encode_part(part))
            pipe.expire(parts_key(file_id), ttl_seconds)
            session_alive, _, _ = await pipe.execute()
        if not session_alive:
            # Session expired mid-part; drop the orphaned ack.
            await self._redis.delete(parts_key(file_id))
            return False
        return True

    async def list_parts(self, file_id: str) -> list[PartAck]:
        entries = await self._redis.hgetall(parts_key(file_id))
        return sorted((_decode_part(raw) for raw in entries.values()), key=lambda p: p.part_number)

    async def delete(self, file_id: str) -> None:
        await self._redis.delete(session_key(file_id), parts_key(file_id))


class MemorySessionStore(SessionStore):
    """Process-local store with the same TTL semantics, for development and tests."""

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._parts: Dict[str, Dict[int, PartAck]] = {}

    def _live(self, file_id: str) -> Optional[str]:
        entry = self._sessions.get(file_id)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._clock() >= expires_at:
            self._sessions.pop(file_id, None)
            self._parts.pop(file_id, None)
            return None
        return raw

    async def create(self, session: UploadSession, ttl_seconds: int) -> None:
        with self._lock:
            self._sessions[session.file_id] = (session.model_dump_json(), self._clock() + ttl_seconds)
            self._parts[session.file_id] = {}

    async def get(self, file_id: str) -> Optional[UploadSession]:
        with self._lock:
            raw = self._live(file_id)
        return UploadSession.model_validate_json(raw) if raw else None

    async def add_part(self, file_id: str, part: PartAck, ttl_seconds: int) -> bool:
        with self._lock:
            raw = self._live(file_id)
            if raw is None:
                return False
            self._sessions[file_id] = (raw, self._clock() + ttl_seconds)
            self._parts.setdefault(file_id, {})[part.part_number] = part
        return True

    async def list_parts(self, file_id: str) -> list[PartAck]:
        with self._lock:
            if self._live(file_id) is None:
                return []
            parts = list(self._parts.get(file_id, {}).values())
        return sorted(parts, key=lambda p: p.part_number)

    async def delete(self, file_id: str) -> None:
        with self._lock:
            self._sessions.pop(file_id, None)
            self._parts.pop(file_id, None)

    def purge_expired(self) -> int:
        with self._lock:
            expired = [file_id for file_id in list(self._sessions) if self._live(file_id) is None]
        return len(expired)


def _check_redis_availability(url: str) -> bool:
    if not url:
        return False
    try:
        import redis

        redis.from_url(url, socket_connect_timeout=2).ping()
        return True
    except Exception as exc:
        logger.warning("event=redis_unavailable url=%s error=%s", url, exc)
        return False


def get_session_store(url: str = REDIS_URL) -> SessionStore:
    if _check_redis_availability(url):
        logger.info("event=session_store_selected backend=redis")
        return RedisSessionStore(url)
    logger.warning(
        "event=session_store_selected backend=memory note=sessions are lost on restart and not shared across workers"
    )
    return MemorySessionStore()
