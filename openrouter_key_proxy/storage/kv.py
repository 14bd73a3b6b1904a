from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

import yaml

_redis_from_url: Any | None

try:
    from redis.asyncio import from_url as _redis_from_url
except ImportError:  # pragma: no cover - optional dependency.
    _redis_from_url = None


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str) -> None: ...


class KeyValueStoreFactory(Protocol):
    def __call__(self, redis_url: str, key_prefix: str) -> KeyValueStore: ...


class InMemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value

    def snapshot(self) -> dict[str, str]:
        return dict(self._data)


class YamlFileKeyValueStore:
    """Keeps every entry in one YAML mapping, rewritten atomically on each put."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        payload = await asyncio.to_thread(self._read)
        value = payload.get(key)
        return None if value is None else str(value)

    async def put(self, key: str, value: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write_entry, key, value)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
        if not isinstance(payload, dict):
            return {}
        return payload

    def _write_entry(self, key: str, value: str) -> None:
        payload = self._read()
        payload[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=True, allow_unicode=True)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise


class RedisKeyValueStore:
    def __init__(self, redis_client: Any, key_prefix: str = "") -> None:
        self._redis = redis_client
        self._prefix = key_prefix

    async def get(self, key: str) -> str | None:
        value = await self._redis.get(self._prefix + key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        if isinstance(value, str):
            return value
        return None

    async def put(self, key: str, value: str) -> None:
        await self._redis.set(self._prefix + key, value)

    async def close(self) -> None:
        await self._redis.aclose()


def build_redis_key_value_store(redis_url: str, key_prefix: str) -> KeyValueStore:
    if _redis_from_url is None:  # pragma: no cover - covered by fallback tests.
        msg = "redis package is not installed"
        raise RuntimeError(msg)
    client = _redis_from_url(redis_url, decode_responses=False)
    return RedisKeyValueStore(redis_client=client, key_prefix=key_prefix)


def build_key_value_store(
    backend: str,
    *,
    path: str | Path | None = None,
    redis_url: str | None = None,
    redis_key_prefix: str = "",
    logger: logging.Logger | None = None,
    create_redis_store: KeyValueStoreFactory | None = None,
) -> KeyValueStore:
    if backend == "yaml":
        if path is None:
            raise ValueError("The yaml store backend requires a store path.")
        return YamlFileKeyValueStore(path)

    if backend == "redis":
        if not redis_url:
            if logger is not None:
                logger.warning("store_redis_unconfigured fallback=memory")
            return InMemoryKeyValueStore()
        factory = create_redis_store or build_redis_key_value_store
        try:
            return factory(redis_url, redis_key_prefix)
        except RuntimeError as exc:
            if logger is not None:
                logger.warning(
                    "store_redis_unavailable reason=%s fallback=memory",
                    str(exc),
                )
            return InMemoryKeyValueStore()

    return InMemoryKeyValueStore()
