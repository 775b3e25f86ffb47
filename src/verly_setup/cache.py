"""Local cache of setup results, keyed by chatbot id.

The cache only speeds up resumption (the inferred prompt can be shown
before the server answers). It is never the source of truth, and a
storage failure never interrupts the wizard: errors are logged and
treated as a miss.

Entries are stored under ``<namespace>:<chatbot_id>`` with this shape::

    result: {...}              # BootstrapResult.to_dict()
    saved_at: '2026-10-19T12:00:00+00:00'
    version: 1                 # CACHE_VERSION
    chatbot_id: 'abc123'

An entry is dropped on load when its schema version differs from
``CACHE_VERSION``, when it is older than the TTL, or when it cannot be
parsed.

Example:
    ```python
    from pathlib import Path
    from verly_setup.cache import FileStorage, SetupCache

    cache = SetupCache(FileStorage(Path("~/.cache/verly-setup").expanduser()))
    cache.save("abc123", result)
    entry = cache.load("abc123")
    if entry is not None:
        print(entry.result.system_prompt)
    cache.clear("abc123")
    ```
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml

from .models import BootstrapResult, parse_datetime, utc_now

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_NAMESPACE = "setup"


@runtime_checkable
class CacheStorage(Protocol):
    """Minimal key/value storage the cache writes through to."""

    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStorage:
    """Dictionary-backed storage, mainly for tests."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        return self._data.get(key)

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileStorage:
    """One YAML file per key in a directory.

    Keys are mapped to file names by replacing anything outside
    ``[A-Za-z0-9_.-]`` with ``_``; ``setup:abc`` becomes ``setup_abc.yaml``.
    """

    _UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, key: str) -> Path:
        return self._directory / f"{self._UNSAFE.sub('_', key)}.yaml"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ValueError(f"Cache file {path} does not hold a mapping")
        return data

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        with open(self.path_for(key), "w", encoding="utf-8") as f:
            yaml.dump(value, f, default_flow_style=False, sort_keys=False)

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            path.unlink()


@dataclass
class SetupCacheEntry:
    """A cached setup result.

    Attributes:
        result: Outcome of the concurrent setup calls
        saved_at: When the entry was written
        version: Schema version of the entry
        chatbot_id: Chatbot the result belongs to
    """

    result: BootstrapResult
    saved_at: datetime
    version: int
    chatbot_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "result": self.result.to_dict(),
            "saved_at": self.saved_at.isoformat(),
            "version": self.version,
            "chatbot_id": self.chatbot_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SetupCacheEntry:
        saved_at = parse_datetime(data.get("saved_at"))
        if saved_at is None:
            raise ValueError("Cache entry has no valid saved_at timestamp")
        if saved_at.tzinfo is None:
            saved_at = saved_at.replace(tzinfo=timezone.utc)
        result = data.get("result")
        if not isinstance(result, dict):
            raise ValueError("Cache entry has no result mapping")
        return cls(
            result=BootstrapResult.from_dict(result),
            saved_at=saved_at,
            version=int(data["version"]),
            chatbot_id=str(data.get("chatbot_id", "")),
        )


class SetupCache:
    """Write-through cache of setup results.

    Args:
        storage: Where entries live
        ttl_seconds: Age after which an entry is treated as a miss
        namespace: Key prefix
        clock: Source of the current time (aware UTC)
    """

    def __init__(
        self,
        storage: CacheStorage | None = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        namespace: str = DEFAULT_NAMESPACE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self._ttl_seconds = ttl_seconds
        self._namespace = namespace
        self._clock = clock

    @classmethod
    def from_config(cls, config: Any) -> SetupCache:
        """Create from a :class:`~verly_setup.config.CacheConfig`."""
        storage: CacheStorage = (
            FileStorage(config.directory) if config.directory else MemoryStorage()
        )
        return cls(storage, ttl_seconds=config.ttl_seconds, namespace=config.namespace)

    @property
    def storage(self) -> CacheStorage:
        return self._storage

    def key(self, chatbot_id: str) -> str:
        return f"{self._namespace}:{chatbot_id}"

    def save(self, chatbot_id: str, result: BootstrapResult) -> None:
        """Store ``result`` for a chatbot, replacing any previous entry."""
        entry = SetupCacheEntry(
            result=result,
            saved_at=self._clock(),
            version=CACHE_VERSION,
            chatbot_id=chatbot_id,
        )
        try:
            self._storage.set(self.key(chatbot_id), entry.to_dict())
        except Exception as e:
            logger.warning("Could not save setup cache for %s: %s", chatbot_id, e)
            return
        logger.debug(
            "Saved setup cache for %s",
            chatbot_id,
            extra={"chatbot_id": chatbot_id},
        )

    def load(self, chatbot_id: str) -> SetupCacheEntry | None:
        """Return the cached entry, or None on a miss.

        Version-mismatched, expired and corrupt entries are removed.
        """
        try:
            raw = self._storage.get(self.key(chatbot_id))
            if raw is None:
                logger.debug("Setup cache miss (no entry) for %s", chatbot_id)
                return None
            entry = SetupCacheEntry.from_dict(raw)
        except Exception as e:
            logger.warning("Corrupt setup cache entry for %s, clearing: %s", chatbot_id, e)
            self.clear(chatbot_id)
            return None

        if entry.version != CACHE_VERSION:
            logger.debug("Setup cache miss (version mismatch) for %s, clearing", chatbot_id)
            self.clear(chatbot_id)
            return None

        age = (self._clock() - entry.saved_at).total_seconds()
        if age > self._ttl_seconds:
            logger.debug("Setup cache miss (expired, %.0fs old) for %s", age, chatbot_id)
            self.clear(chatbot_id)
            return None

        logger.debug("Setup cache hit for %s (%.0fs old)", chatbot_id, age)
        return entry

    def clear(self, chatbot_id: str) -> None:
        """Remove the entry for a chatbot, if any."""
        try:
            self._storage.delete(self.key(chatbot_id))
        except Exception as e:
            logger.warning("Could not clear setup cache for %s: %s", chatbot_id, e)
            return
        logger.debug("Cleared setup cache for %s", chatbot_id)
