"""Shared fixtures for the ScreenVault test-suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from screen_vault.records import RecordingRepository
from screen_vault.storage import ChunkedMediaStore, ConnectionPool


@pytest.fixture
def pool(tmp_path: Path) -> ConnectionPool:
    connection_pool = ConnectionPool(tmp_path / "media.db", size=2)
    yield connection_pool
    connection_pool.close()


@pytest.fixture
def store(pool: ConnectionPool) -> ChunkedMediaStore:
    return ChunkedMediaStore(pool, chunk_size=16)


@pytest.fixture
def repository(pool: ConnectionPool, store: ChunkedMediaStore) -> RecordingRepository:
    return RecordingRepository(pool, store)
