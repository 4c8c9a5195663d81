"""Durable storage for history, bookmarks and settings.

Values are JSON strings kept in a byte-capacity-bounded key/value store.
When a write does not fit, the oldest item is evicted and the write retried
until it succeeds or nothing is left, in which case the key is cleared.
"""

import errno
import logging
import os
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Protocol, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from .errors import StorageCapacityError
from .models import SavedItem, Session

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

HISTORY_KEY = "history"
BOOKMARKS_KEY = "bookmarks"
CHARACTERS_KEY = "characters"
CREDITS_KEY = "credits"
USAGE_KEY = "usage"
LIMITS_KEY = "limits"

_CAPACITY_ERRNOS = {errno.ENOSPC, errno.EFBIG, getattr(errno, "EDQUOT", errno.ENOSPC)}


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


def is_capacity_error(error: BaseException) -> bool:
    """Recognise "out of room" failures however the backend reports them."""
    if isinstance(error, StorageCapacityError):
        return True
    if isinstance(error, OSError) and error.errno in _CAPACITY_ERRNOS:
        return True
    if type(error).__name__ == "QuotaExceededError":
        return True
    return "quota" in str(error).lower()


class MemoryKeyValueStore:
    """In-process store with a total byte capacity."""

    def __init__(self, capacity: int | None = None) -> None:
        self.capacity = capacity
        self._data: dict[str, str] = {}

    def _size(self, exclude: str | None = None) -> int:
        return sum(len(v.encode()) for k, v in self._data.items() if k != exclude)

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        size = len(value.encode())
        if self.capacity is not None and self._size(exclude=key) + size > self.capacity:
            msg = f"Quota exceeded writing {size} bytes to {key!r}"
            raise StorageCapacityError(msg)
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FileKeyValueStore:
    """One JSON file per key inside ``root``, bounded by total bytes."""

    def __init__(self, root: Path, capacity: int | None = None) -> None:
        self.root = Path(root)
        self.capacity = capacity

    def _path(self, key: str) -> Path:
        return self.root / f"{key}.json"

    def _used(self, exclude: str) -> int:
        if not self.root.exists():
            return 0
        return sum(
            p.stat().st_size for p in self.root.glob("*.json") if p.stem != exclude
        )

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return f.read()

    def set(self, key: str, value: str) -> None:
        data = value.encode("utf-8")
        if self.capacity is not None and self._used(key) + len(data) > self.capacity:
            msg = f"Quota exceeded writing {len(data)} bytes to {key!r}"
            raise StorageCapacityError(msg)
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = None
        try:
            with tempfile.NamedTemporaryFile(
                dir=self.root, prefix=f"{key}.", suffix=".tmp", delete=False,
            ) as f:
                tmp = Path(f.name)
                f.write(data)
            os.replace(tmp, self._path(key))
        except OSError:
            if tmp is not None:
                tmp.unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


def evict_oldest(items: Sequence[T], created: Callable[[T], float]) -> list[T]:
    """Drop the single item with the earliest creation time."""
    if not items:
        return []
    oldest = min(range(len(items)), key=lambda i: created(items[i]))
    return [item for i, item in enumerate(items) if i != oldest]


@dataclass
class SaveReport:
    """What a save actually managed to write."""

    written: int
    evicted: int = 0
    cleared: bool = False


class Collection(Generic[T]):
    """A list of models stored under one key with oldest-first eviction."""

    def __init__(
        self,
        backend: KeyValueStore,
        key: str,
        model: type[T],
        created: Callable[[T], float],
        evict: Callable[[Sequence[T], Callable[[T], float]], list[T]] = evict_oldest,
    ) -> None:
        self.backend = backend
        self.key = key
        self.created = created
        self.evict = evict
        self._adapter = TypeAdapter(list[model])

    def save(self, items: Sequence[T]) -> SaveReport:
        """Write ``items``, evicting the oldest one at a time while it does not fit.

        Errors other than capacity errors propagate.
        """
        current = list(items)
        evicted = 0
        if not current:
            self.backend.delete(self.key)
            return SaveReport(written=0)
        while current:
            try:
                self.backend.set(self.key, self._adapter.dump_json(current).decode())
            except Exception as e:
                if not is_capacity_error(e):
                    raise
                current = self.evict(current, self.created)
                evicted += 1
                logger.warning(
                    "Storage full while saving %s; evicted oldest item (%d left)",
                    self.key,
                    len(current),
                )
                continue
            return SaveReport(written=len(current), evicted=evicted)
        logger.warning("Nothing from %s fits in storage; clearing the key", self.key)
        self.backend.delete(self.key)
        return SaveReport(written=0, evicted=evicted, cleared=True)

    def load(self) -> list[T]:
        raw = self.backend.get(self.key)
        if not raw:
            return []
        try:
            return self._adapter.validate_json(raw)
        except ValidationError as e:
            logger.warning("Could not parse %s from storage: %s", self.key, e)
            self.backend.delete(self.key)
            return []


class HistoryRepository(Collection[Session]):
    """Session history; the earliest-created session is evicted first."""

    def __init__(self, backend: KeyValueStore) -> None:
        super().__init__(backend, HISTORY_KEY, Session, created=lambda s: s.id)


class BookmarkRepository(Collection[SavedItem]):
    """Saved scenes with an expiry; expired entries vanish on load."""

    def __init__(self, backend: KeyValueStore, clock=time.time) -> None:
        super().__init__(backend, BOOKMARKS_KEY, SavedItem, created=lambda s: s.created_at)
        self.clock = clock

    def load(self) -> list[SavedItem]:
        items = super().load()
        now = self.clock()
        valid = [item for item in items if item.expires_at > now]
        if len(valid) < len(items):
            logger.info("Dropping %d expired bookmark(s)", len(items) - len(valid))
            self.save(valid)
        return valid


class SettingsRepository:
    """Single-value settings (credits, usage, limits, characters)."""

    def __init__(self, backend: KeyValueStore) -> None:
        self.backend = backend

    def load(self, key: str, model: type[T]) -> T | None:
        raw = self.backend.get(key)
        if not raw:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Could not parse %s from storage: %s", key, e)
            self.backend.delete(key)
            return None

    def save(self, key: str, value: BaseModel) -> bool:
        """Write one value. Capacity errors are logged and reported as False."""
        try:
            self.backend.set(key, value.model_dump_json())
        except Exception as e:
            if not is_capacity_error(e):
                raise
            logger.error("Storage is full; could not save %s", key)
            return False
        return True

    def load_list(self, key: str, model: type[T]) -> list[T]:
        raw = self.backend.get(key)
        if not raw:
            return []
        try:
            return TypeAdapter(list[model]).validate_json(raw)
        except ValidationError as e:
            logger.warning("Could not parse %s from storage: %s", key, e)
            self.backend.delete(key)
            return []

    def save_list(self, key: str, values: Sequence[BaseModel]) -> bool:
        if not values:
            self.backend.delete(key)
            return True
        payload = TypeAdapter(list[type(values[0])]).dump_json(list(values)).decode()
        try:
            self.backend.set(key, payload)
        except Exception as e:
            if not is_capacity_error(e):
                raise
            logger.error("Storage is full; could not save %s", key)
            return False
        return True
