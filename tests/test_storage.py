from __future__ import annotations

import io

import pytest

from screen_vault.storage import (
    DEFAULT_CHUNK_SIZE,
    ByteRange,
    ChunkedMediaStore,
    ConnectionPool,
    InvalidRangeError,
    MediaFileNotFoundError,
    StorageError,
)


def _payload(size: int) -> bytes:
    return bytes((index * 7) % 251 for index in range(size))


def test_default_chunk_size() -> None:
    assert DEFAULT_CHUNK_SIZE == 255 * 1024


@pytest.mark.parametrize("size", [0, 1, 16, 16 * 3 + 5])
def test_put_then_read_returns_identical_bytes(store: ChunkedMediaStore, size: int) -> None:
    data = _payload(size)
    stored = store.put(data, filename="clip.webm", content_type="video/webm")
    assert stored.length == size
    assert stored.chunk_count == (size + 15) // 16
    assert store.read(stored.id) == data
    iterator, total = store.get(stored.id)
    assert total == size
    assert b"".join(iterator) == data


def test_put_accepts_file_objects(store: ChunkedMediaStore) -> None:
    data = _payload(40)
    stored = store.put(io.BytesIO(data), filename="clip.webm", content_type="video/webm")
    assert stored.length == 40
    assert store.read(stored.id) == data


@pytest.mark.parametrize(
    "start, end",
    [(0, 52), (0, 0), (52, 52), (20, 20), (10, 40), (16, 31), (15, 16)],
)
def test_range_reads_return_exact_interval(store: ChunkedMediaStore, start: int, end: int) -> None:
    data = _payload(53)
    stored = store.put(data, filename="clip.webm", content_type="video/webm")
    chunk = store.read(stored.id, ByteRange(start, end))
    assert len(chunk) == end - start + 1
    assert chunk == data[start : end + 1]


def test_range_end_is_clamped(store: ChunkedMediaStore) -> None:
    data = _payload(53)
    stored = store.put(data, filename="clip.webm", content_type="video/webm")
    assert store.read(stored.id, ByteRange(50, 10_000)) == data[50:]


def test_range_reads_only_intersecting_chunks(
    store: ChunkedMediaStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    stored = store.put(_payload(80), filename="clip.webm", content_type="video/webm")
    original = store._read_chunk
    requested: list[int] = []

    def tracking(file_id: str, index: int) -> bytes:
        requested.append(index)
        return original(file_id, index)

    monkeypatch.setattr(store, "_read_chunk", tracking)
    store.read(stored.id, ByteRange(20, 40))
    assert requested == [1, 2]


@pytest.mark.parametrize(
    "byte_range",
    [ByteRange(53, 60), ByteRange(10, 5), ByteRange(-1, 4)],
)
def test_invalid_ranges_are_rejected(store: ChunkedMediaStore, byte_range: ByteRange) -> None:
    stored = store.put(_payload(53), filename="clip.webm", content_type="video/webm")
    with pytest.raises(InvalidRangeError):
        store.get(stored.id, byte_range)


def test_unknown_reference(store: ChunkedMediaStore) -> None:
    with pytest.raises(MediaFileNotFoundError):
        store.get("0" * 32)
    with pytest.raises(MediaFileNotFoundError):
        store.delete("0" * 32)


def test_delete_removes_chunks_and_file(store: ChunkedMediaStore, pool: ConnectionPool) -> None:
    stored = store.put(_payload(40), filename="clip.webm", content_type="video/webm")
    store.delete(stored.id)
    with pytest.raises(MediaFileNotFoundError):
        store.stat(stored.id)
    with pytest.raises(MediaFileNotFoundError):
        store.get(stored.id)
    with pytest.raises(MediaFileNotFoundError):
        store.delete(stored.id)
    with pool.connection() as connection:
        remaining = connection.execute(
            "SELECT COUNT(*) FROM chunks WHERE file_id = ?", (stored.id,)
        ).fetchone()[0]
    assert remaining == 0


def test_incomplete_chunk_set_delete_rolls_back(store: ChunkedMediaStore, pool: ConnectionPool) -> None:
    stored = store.put(_payload(60), filename="clip.webm", content_type="video/webm")
    with pool.connection() as connection, connection:
        connection.execute("DELETE FROM chunks WHERE file_id = ? AND n = 1", (stored.id,))

    with pytest.raises(StorageError):
        store.delete(stored.id)

    assert store.stat(stored.id).length == 60
    with pool.connection() as connection:
        remaining = connection.execute(
            "SELECT COUNT(*) FROM chunks WHERE file_id = ?", (stored.id,)
        ).fetchone()[0]
    assert remaining == 3


def test_missing_chunk_fails_while_streaming(store: ChunkedMediaStore, pool: ConnectionPool) -> None:
    stored = store.put(_payload(60), filename="clip.webm", content_type="video/webm")
    with pool.connection() as connection, connection:
        connection.execute("DELETE FROM chunks WHERE file_id = ? AND n = 2", (stored.id,))

    assert store.read(stored.id, ByteRange(0, 20)) == _payload(60)[:21]
    iterator, _ = store.get(stored.id)
    with pytest.raises(StorageError):
        b"".join(iterator)


def test_verify_checks_only_the_chunks_a_range_needs(store: ChunkedMediaStore, pool: ConnectionPool) -> None:
    stored = store.put(_payload(60), filename="clip.webm", content_type="video/webm")
    assert store.verify(stored.id).length == 60
    with pool.connection() as connection, connection:
        connection.execute("DELETE FROM chunks WHERE file_id = ? AND n = 2", (stored.id,))

    with pytest.raises(StorageError):
        store.verify(stored.id)
    with pytest.raises(StorageError):
        store.verify(stored.id, ByteRange(30, 40))
    assert store.verify(stored.id, ByteRange(0, 31)).id == stored.id
    with pytest.raises(MediaFileNotFoundError):
        store.verify("0" * 32)


def test_metadata_round_trip(store: ChunkedMediaStore) -> None:
    stored = store.put(b"abc", filename="clip.webm", content_type="video/webm", metadata={"title": "Demo"})
    loaded = store.stat(stored.id)
    assert loaded.metadata == {"title": "Demo"}
    assert loaded.content_type == "video/webm"
    assert loaded.filename == "clip.webm"


def test_closed_pool_raises(tmp_path) -> None:
    pool = ConnectionPool(tmp_path / "closed.db", size=1)
    store = ChunkedMediaStore(pool)
    pool.close()
    with pytest.raises(StorageError):
        store.put(b"x", filename="a.webm", content_type="video/webm")


def test_invalid_configuration(pool: ConnectionPool) -> None:
    with pytest.raises(ValueError):
        ChunkedMediaStore(pool, chunk_size=0)
    with pytest.raises(ValueError):
        ConnectionPool(":memory:", size=0)
