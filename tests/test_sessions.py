import asyncio

import pytest

from video_uploader.core import exceptions
from video_uploader.schemas import UploadSession
from video_uploader.services.coordinator import UploadCoordinator, build_object_key, parse_part_number
from video_uploader.sessions import MemorySessionStore, get_session_store, parts_key, session_key
from video_uploader.storage.base import PartAck
from video_uploader.storage.local import LocalObjectStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


async def _body(data):
    yield data


def _session(file_id="f1"):
    return UploadSession(
        file_id=file_id,
        upload_id="u1",
        object_key=f"{file_id}/a.mp4",
        file_name="a.mp4",
        content_type="video/mp4",
    )


def test_key_layout():
    assert session_key("abc") == "multipart:abc"
    assert parts_key("abc") == "multipart:abc:parts"


def test_memory_store_expires_sessions():
    clock = FakeClock()
    store = MemorySessionStore(clock=clock)

    async def scenario():
        await store.create(_session(), ttl_seconds=10)
        assert (await store.get("f1")).upload_id == "u1"
        clock.advance(10)
        assert await store.get("f1") is None
        assert await store.list_parts("f1") == []

    asyncio.run(scenario())


def test_part_ack_refreshes_ttl():
    clock = FakeClock()
    store = MemorySessionStore(clock=clock)

    async def scenario():
        await store.create(_session(), ttl_seconds=10)
        clock.advance(8)
        await store.add_part("f1", PartAck(1, "e1", 5), ttl_seconds=10)
        clock.advance(8)
        assert await store.get("f1") is not None
        clock.advance(3)
        assert await store.get("f1") is None

    asyncio.run(scenario())


def test_repeated_part_number_keeps_latest_ack():
    store = MemorySessionStore()

    async def scenario():
        await store.create(_session(), ttl_seconds=60)
        await store.add_part("f1", PartAck(3, "c", 1), ttl_seconds=60)
        await store.add_part("f1", PartAck(1, "a-old", 1), ttl_seconds=60)
        await store.add_part("f1", PartAck(2, "b", 1), ttl_seconds=60)
        await store.add_part("f1", PartAck(1, "a-new", 1), ttl_seconds=60)
        return await store.list_parts("f1")

    parts = asyncio.run(scenario())
    assert [(p.part_number, p.etag) for p in parts] == [(1, "a-new"), (2, "b"), (3, "c")]


def test_concurrent_part_acks_are_all_kept():
    store = MemorySessionStore()

    async def scenario():
        await store.create(_session(), ttl_seconds=60)
        await asyncio.gather(
            *(store.add_part("f1", PartAck(n, f"e{n}", 1), ttl_seconds=60) for n in range(1, 51))
        )
        return await store.list_parts("f1")

    parts = asyncio.run(scenario())
    assert [p.part_number for p in parts] == list(range(1, 51))


def test_purge_expired_counts_removed_sessions():
    clock = FakeClock()
    store = MemorySessionStore(clock=clock)

    async def scenario():
        await store.create(_session("a"), ttl_seconds=5)
        await store.create(_session("b"), ttl_seconds=50)

    asyncio.run(scenario())
    clock.advance(10)
    assert store.purge_expired() == 1
    assert store.purge_expired() == 0


def test_session_store_falls_back_to_memory_without_redis():
    # conftest reloads video_uploader modules; resolve the current class objects.
    from video_uploader.sessions import MemorySessionStore, get_session_store

    assert isinstance(get_session_store(""), MemorySessionStore)


@pytest.mark.parametrize("value, expected", [("1", 1), (" 42 ", 42), (10000, 10000)])
def test_parse_part_number_accepts(value, expected):
    assert parse_part_number(value) == expected


@pytest.mark.parametrize("value", ["0", "-1", "1.5", "abc", "10001", 0, True, None])
def test_parse_part_number_rejects(value):
    with pytest.raises(Exception) as excinfo:
        parse_part_number(value)
    assert getattr(excinfo.value, "status_code", None) == 400


def test_object_key_sanitises_separators():
    assert build_object_key("id", "a/b\\c.mp4") == "id/a_b_c.mp4"


def test_expired_session_behaves_like_unknown_file_id(tmp_path):
    clock = FakeClock()
    coordinator = UploadCoordinator(
        LocalObjectStore(str(tmp_path), min_part_size=0),
        MemorySessionStore(clock=clock),
        recorder=object(),
        session_ttl=60,
    )

    async def scenario():
        session = await coordinator.init("late.mp4", "video/mp4")
        await coordinator.upload_part(session.file_id, "1", _body(b"abc"))
        clock.advance(61)
        with pytest.raises(exceptions.NotFoundError) as expired:
            await coordinator.upload_part(session.file_id, "2", _body(b"def"))
        with pytest.raises(exceptions.NotFoundError) as unknown:
            await coordinator.upload_part("never-issued", "2", _body(b"def"))
        assert expired.value.message == unknown.value.message
        with pytest.raises(exceptions.NotFoundError):
            await coordinator.complete(session.file_id)

    asyncio.run(scenario())


def test_sessions_for_different_files_are_isolated(tmp_path):
    coordinator = UploadCoordinator(
        LocalObjectStore(str(tmp_path), min_part_size=0), MemorySessionStore()
    )

    async def scenario():
        first = await coordinator.init("one.mp4")
        second = await coordinator.init("two.mp4")
        await coordinator.upload_part(first.file_id, 1, _body(b"one"))
        await coordinator.upload_part(first.file_id, 2, _body(b"more"))

        _, first_parts = await coordinator.list_parts(first.file_id)
        _, second_parts = await coordinator.list_parts(second.file_id)
        assert [p.part_number for p in first_parts] == [1, 2]
        assert second_parts == []
        assert first.upload_id != second.upload_id

    asyncio.run(scenario())


def test_complete_needs_recorder(tmp_path):
    coordinator = UploadCoordinator(
        LocalObjectStore(str(tmp_path), min_part_size=0), MemorySessionStore()
    )

    async def scenario():
        session = await coordinator.init("x.mp4")
        await coordinator.upload_part(session.file_id, 1, _body(b"x"))
        with pytest.raises(RuntimeError):
            await coordinator.complete(session.file_id)

    asyncio.run(scenario())


def test_add_part_reports_missing_session():
    clock = FakeClock()
    store = MemorySessionStore(clock=clock)

    async def scenario():
        await store.create(_session(), ttl_seconds=10)
        assert await store.add_part("f1", PartAck(1, "e1", 1), ttl_seconds=10) is True
        clock.advance(11)
        assert await store.add_part("f1", PartAck(2, "e2", 1), ttl_seconds=10) is False
        assert await store.add_part("never-issued", PartAck(1, "e", 1), ttl_seconds=10) is False

    asyncio.run(scenario())


def test_session_expiring_while_part_streams_is_not_acknowledged(tmp_path):
    clock = FakeClock()
    coordinator = UploadCoordinator(
        LocalObjectStore(str(tmp_path), min_part_size=0),
        MemorySessionStore(clock=clock),
        session_ttl=60,
    )

    async def slow_body():
        yield b"first-half"
        clock.advance(61)
        yield b"second-half"

    async def scenario():
        session = await coordinator.init("slow.mp4", "video/mp4")
        with pytest.raises(exceptions.NotFoundError) as excinfo:
            await coordinator.upload_part(session.file_id, "1", slow_body())
        assert excinfo.value.message == "Multipart upload not found"
        assert await coordinator.session_store.get(session.file_id) is None

    asyncio.run(scenario())
