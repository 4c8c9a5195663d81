import errno
import json
import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from storyweaver.errors import StorageCapacityError
from storyweaver.models import CreditState, GenerationParams, SavedItem, Scene, Session
from storyweaver.persistence import (
    BOOKMARKS_KEY,
    CREDITS_KEY,
    HISTORY_KEY,
    BookmarkRepository,
    FileKeyValueStore,
    HistoryRepository,
    MemoryKeyValueStore,
    SettingsRepository,
    evict_oldest,
    is_capacity_error,
)


class LimitedStore(MemoryKeyValueStore):
    """Accepts lists of at most ``max_items`` entries."""

    def __init__(self, max_items: int) -> None:
        super().__init__()
        self.max_items = max_items
        self.attempts = 0

    def set(self, key: str, value: str) -> None:
        self.attempts += 1
        if len(json.loads(value)) > self.max_items:
            msg = "QuotaExceededError: storage full"
            raise StorageCapacityError(msg)
        super().set(key, value)


class BrokenStore(MemoryKeyValueStore):
    def set(self, key: str, value: str) -> None:
        msg = "disk controller on fire"
        raise RuntimeError(msg)


def _session(session_id: int) -> Session:
    return Session(id=session_id, title=f"Session {session_id}", scenes=(Scene(id=session_id + 1, prompt="p"),))


def _saved(item_id: str, created_at: float, expires_at: float) -> SavedItem:
    return SavedItem(
        id=item_id,
        session_id=1,
        scene=Scene(id=2, prompt="p"),
        title="t",
        params=GenerationParams(),
        created_at=created_at,
        expires_at=expires_at,
    )


def test_capacity_error_detection() -> None:
    assert is_capacity_error(StorageCapacityError("full"))
    assert is_capacity_error(OSError(errno.ENOSPC, "No space left on device"))
    assert is_capacity_error(type("QuotaExceededError", (Exception,), {})())
    assert not is_capacity_error(OSError(errno.EACCES, "Permission denied"))
    assert not is_capacity_error(ValueError("bad value"))


def test_memory_store_enforces_capacity() -> None:
    store = MemoryKeyValueStore(capacity=10)
    store.set("a", "12345")
    store.set("a", "1234567890")
    with pytest.raises(StorageCapacityError):
        store.set("b", "1")


def test_evict_oldest_uses_creation_time_not_position() -> None:
    items = [_session(3), _session(1), _session(2)]
    assert [s.id for s in evict_oldest(items, lambda s: s.id)] == [3, 2]
    assert evict_oldest([], lambda s: s.id) == []


def test_history_save_evicts_oldest_until_it_fits() -> None:
    backend = LimitedStore(max_items=2)
    repo = HistoryRepository(backend)

    report = repo.save([_session(30), _session(10), _session(20)])

    assert report.written == 2
    assert report.evicted == 1
    assert not report.cleared
    assert [s.id for s in repo.load()] == [30, 20]


def test_history_save_clears_key_when_nothing_fits(caplog) -> None:
    backend = LimitedStore(max_items=0)
    MemoryKeyValueStore.set(backend, HISTORY_KEY, "[]")
    repo = HistoryRepository(backend)

    with caplog.at_level(logging.WARNING, logger="storyweaver.persistence"):
        report = repo.save([_session(1), _session(2)])

    assert report.cleared
    assert report.written == 0
    assert backend.get(HISTORY_KEY) is None
    assert "clearing the key" in caplog.text


def test_non_capacity_errors_propagate() -> None:
    repo = HistoryRepository(BrokenStore())
    with pytest.raises(RuntimeError, match="on fire"):
        repo.save([_session(1)])


def test_corrupt_history_is_discarded() -> None:
    backend = MemoryKeyValueStore()
    backend.set(HISTORY_KEY, "{not json")

    assert HistoryRepository(backend).load() == []
    assert backend.get(HISTORY_KEY) is None


def test_expired_bookmarks_are_dropped_on_load() -> None:
    backend = MemoryKeyValueStore()
    writer = BookmarkRepository(backend, clock=lambda: 100.0)
    writer.save([_saved("1-2", 100.0, 200.0), _saved("3-4", 50.0, 150.0)])

    reader = BookmarkRepository(backend, clock=lambda: 175.0)
    assert [item.id for item in reader.load()] == ["1-2"]
    assert len(json.loads(backend.get(BOOKMARKS_KEY))) == 1


def test_file_store_round_trip(tmp_path) -> None:
    store = FileKeyValueStore(tmp_path / "data")
    assert store.get("history") is None

    store.set("history", '[{"id": 1}]')

    assert store.get("history") == '[{"id": 1}]'
    assert (tmp_path / "data" / "history.json").exists()
    store.delete("history")
    store.delete("history")
    assert store.get("history") is None


def test_file_store_capacity(tmp_path) -> None:
    store = FileKeyValueStore(tmp_path, capacity=16)
    store.set("a", "x" * 10)
    with pytest.raises(StorageCapacityError):
        store.set("b", "y" * 10)
    store.set("a", "z" * 16)


def test_file_store_concurrent_saves(tmp_path) -> None:
    repo = HistoryRepository(FileKeyValueStore(tmp_path))

    def save_many(offset: int) -> None:
        for i in range(50):
            repo.save([_session(offset * 1000 + i)])

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(save_many, range(4)))

    assert len(repo.load()) == 1
    assert list(tmp_path.glob("*.tmp")) == []


def test_settings_repository() -> None:
    backend = MemoryKeyValueStore(capacity=200)
    repo = SettingsRepository(backend)

    assert repo.save(CREDITS_KEY, CreditState(balance=3.5, currency="EUR", rate=0.9))
    assert repo.load(CREDITS_KEY, CreditState).balance == 3.5
    assert repo.load("missing", CreditState) is None

    backend.capacity = 5
    assert not repo.save(CREDITS_KEY, CreditState(balance=1.0))
