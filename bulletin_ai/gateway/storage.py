"""Key/value stores for durable rate state.

The RateTracker only needs get/set/delete of string values, so every backend
implements that small protocol:
  - MemoryStore: process-local dict (tests, one-shot scripts)
  - JsonFileStore: one JSON document on disk, created on first write
  - RedisStore: shared state across processes via redis-py
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Protocol

import redis

logger = logging.getLogger(__name__)

# Errors a backend may raise on an unreadable file, bad JSON or a Redis outage
STORAGE_ERRORS = (OSError, ValueError, redis.RedisError)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store."""

    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """All keys live in a single JSON object on disk.

    Writes go through a temporary file and os.replace so a crash never leaves
    a half-written document behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        with self.path.open(encoding="utf-8") as fh:
            data = json.load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a JSON object")
        return data

    def _write_all(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, ensure_ascii=False, indent=2)
        os.replace(tmp, self.path)

    def get(self, key: str) -> str | None:
        return self._read_all().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read_all()
        data[key] = value
        self._write_all(data)

    def delete(self, key: str) -> None:
        data = self._read_all()
        if data.pop(key, None) is not None:
            self._write_all(data)


class RedisStore:
    """redis-py backed store, for several worker processes sharing one rate state."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisStore:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def get(self, key: str) -> str | None:
        value = self.client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> None:
        self.client.set(key, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)


def build_store(settings) -> KeyValueStore:
    """Create the rate-state store selected by settings.rate_state_backend."""
    backend = settings.rate_state_backend.lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return JsonFileStore(settings.rate_state_path)
    if backend == "redis":
        logger.info("Rate state stored in Redis at %s", settings.redis_url)
        return RedisStore.from_url(settings.redis_url)
    raise ValueError(f"Unknown rate state backend: {settings.rate_state_backend!r}")
