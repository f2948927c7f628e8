from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from screen_vault.records import (
    InvalidRecordingIdError,
    RecordingDeletionError,
    RecordingFilters,
    RecordingNotFoundError,
    RecordingRepository,
    is_valid_recording_id,
)
from screen_vault.storage import ChunkedMediaStore, ConnectionPool, MediaFileNotFoundError, StorageError

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _create(repository: RecordingRepository, title: str | None, size: int, duration: int, offset: int):
    return repository.create(
        b"v" * size,
        filename=f"recording-{offset}.webm",
        content_type="video/webm",
        title=title,
        duration=duration,
        created_at=BASE_TIME + timedelta(minutes=offset),
    )


def test_create_and_serialise(repository: RecordingRepository) -> None:
    record = _create(repository, "  Demo run  ", 40, 12, 0)

    assert is_valid_recording_id(record.id)
    assert record.title == "Demo run"
    assert record.size == 40
    assert repository.store.read(record.file_id) == b"v" * 40
    assert record.to_dict() == {
        "id": record.id,
        "title": "Demo run",
        "filename": "recording-0.webm",
        "size": 40,
        "duration": 12,
        "contentType": "video/webm",
        "createdAt": BASE_TIME.isoformat(),
        "url": f"/recordings/{record.id}",
    }
    assert repository.get(record.id).to_dict() == record.to_dict()


def test_missing_title_falls_back_to_timestamp(repository: RecordingRepository) -> None:
    record = _create(repository, "   ", 1, 0, 0)
    assert record.title == "Recording 2024-05-01 12:00:00"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content_type": "audio/ogg"},
        {"duration": 181},
        {"duration": -1},
        {"title": "x" * 201},
    ],
)
def test_invalid_metadata_is_rejected_before_storing(
    repository: RecordingRepository, pool: ConnectionPool, kwargs: dict
) -> None:
    arguments = {"filename": "a.webm", "content_type": "video/webm", "title": "ok", "duration": 1}
    arguments.update(kwargs)
    with pytest.raises(ValueError):
        repository.create(b"data", **arguments)
    with pool.connection() as connection:
        assert connection.execute("SELECT COUNT(*) FROM files").fetchone()[0] == 0


def test_list_searches_and_sorts(repository: RecordingRepository) -> None:
    alpha = _create(repository, "Alpha demo", 30, 50, 0)
    beta = _create(repository, "beta walkthrough", 10, 120, 1)
    gamma = _create(repository, "Gamma DEMO", 20, 5, 2)

    newest_first = repository.list()
    assert [record.id for record in newest_first] == [gamma.id, beta.id, alpha.id]

    matches = repository.list(RecordingFilters(query="demo"))
    assert {record.id for record in matches} == {alpha.id, gamma.id}

    by_filename = repository.list(RecordingFilters(query="recording-1"))
    assert [record.id for record in by_filename] == [beta.id]

    by_title = repository.list(RecordingFilters(sort="title", order="asc"))
    assert [record.title for record in by_title] == ["Alpha demo", "beta walkthrough", "Gamma DEMO"]

    by_size = repository.list(RecordingFilters(sort="size", order="asc"))
    assert [record.size for record in by_size] == [10, 20, 30]

    by_duration = repository.list(RecordingFilters(sort="duration", order="desc"))
    assert [record.duration for record in by_duration] == [120, 50, 5]


def test_invalid_filters() -> None:
    with pytest.raises(ValueError):
        RecordingFilters(sort="name")
    with pytest.raises(ValueError):
        RecordingFilters(order="sideways")
    assert RecordingFilters(query="   ").query is None
    assert RecordingFilters(order="ASC").order == "asc"


def test_get_validates_identifiers(repository: RecordingRepository) -> None:
    with pytest.raises(InvalidRecordingIdError):
        repository.get("not-an-id")
    with pytest.raises(InvalidRecordingIdError):
        repository.delete("ABCDEF" * 6)
    with pytest.raises(RecordingNotFoundError):
        repository.get("0" * 32)


def test_delete_removes_binary_and_record(repository: RecordingRepository) -> None:
    record = _create(repository, "Demo", 40, 3, 0)
    repository.delete(record.id)
    with pytest.raises(RecordingNotFoundError):
        repository.get(record.id)
    with pytest.raises(MediaFileNotFoundError):
        repository.store.stat(record.file_id)


def test_failed_binary_delete_keeps_record(
    repository: RecordingRepository, store: ChunkedMediaStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    record = _create(repository, "Keep me", 40, 3, 0)

    def broken_delete(file_id: str) -> None:
        raise StorageError("disk on fire")

    monkeypatch.setattr(store, "delete", broken_delete)

    with pytest.raises(RecordingDeletionError):
        repository.delete(record.id)
    assert repository.get(record.id).title == "Keep me"


def test_partially_deleted_chunk_set_keeps_record(
    repository: RecordingRepository, pool: ConnectionPool
) -> None:
    record = _create(repository, "Broken", 40, 3, 0)
    with pool.connection() as connection, connection:
        connection.execute("DELETE FROM chunks WHERE file_id = ? AND n = 0", (record.file_id,))

    with pytest.raises(RecordingDeletionError):
        repository.delete(record.id)
    assert repository.get(record.id).id == record.id


def test_missing_binary_is_logged_and_record_removed(
    repository: RecordingRepository, store: ChunkedMediaStore, caplog: pytest.LogCaptureFixture
) -> None:
    record = _create(repository, "Orphan", 10, 1, 0)
    store.delete(record.file_id)

    repository.delete(record.id)

    assert "already missing" in caplog.text
    with pytest.raises(RecordingNotFoundError):
        repository.get(record.id)


def test_failed_record_insert_removes_binary(
    repository: RecordingRepository, pool: ConnectionPool
) -> None:
    with pool.connection() as connection, connection:
        connection.execute("DROP TABLE recordings")

    with pytest.raises(StorageError):
        repository.create(b"data", filename="a.webm", content_type="video/webm")

    with pool.connection() as connection:
        assert connection.execute("SELECT COUNT(*) FROM files").fetchone()[0] == 0
        assert connection.execute("SELECT COUNT(*) FROM chunks").fetchone()[0] == 0
