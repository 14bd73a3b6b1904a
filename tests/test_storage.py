from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import yaml

from openrouter_key_proxy.models import ClientToken, KeyStats, UpstreamKey
from openrouter_key_proxy.storage.credentials import (
    API_KEYS,
    CURRENT_KEY_INDEX,
    CredentialStore,
)
from openrouter_key_proxy.storage.kv import (
    InMemoryKeyValueStore,
    RedisKeyValueStore,
    YamlFileKeyValueStore,
    build_key_value_store,
)


class _FailingKVStore:
    async def get(self, key: str) -> str | None:
        return None

    async def put(self, key: str, value: str) -> None:
        raise OSError("disk full")


def test_empty_store_reads_defaults() -> None:
    store = CredentialStore(InMemoryKeyValueStore())
    snapshot = asyncio.run(store.load_all())

    assert snapshot.upstream_keys == []
    assert snapshot.client_tokens == []
    assert snapshot.admin_hash is None
    assert snapshot.is_password_set is False
    assert asyncio.run(store.load_cursor()) == -1
    assert asyncio.run(store.load_stats()) == {}


def test_corrupt_values_fall_back_to_defaults(caplog: Any) -> None:
    kv = InMemoryKeyValueStore(
        {
            API_KEYS: "{not json",
            CURRENT_KEY_INDEX: "abc",
            "admin_password_hash": "   ",
        }
    )
    store = CredentialStore(kv)

    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        assert asyncio.run(store.load_upstream_keys()) == []
    assert "store_value_not_json key=api_keys" in caplog.text
    assert asyncio.run(store.load_cursor()) == -1
    assert asyncio.run(store.load_admin_hash()) is None


def test_invalid_entries_are_dropped_individually() -> None:
    kv = InMemoryKeyValueStore(
        {API_KEYS: '[{"name": "k1", "value": "sk-1", "isHealthy": true}, {"name": "k2"}]'}
    )
    keys = asyncio.run(CredentialStore(kv).load_upstream_keys())
    assert [(key.name, key.is_healthy) for key in keys] == [("k1", True)]


def test_records_use_camel_case_on_the_wire() -> None:
    kv = InMemoryKeyValueStore()
    store = CredentialStore(kv)

    async def scenario() -> None:
        await store.save_upstream_keys([UpstreamKey(name="k1", value="sk-1")])
        await store.save_client_tokens(
            [ClientToken(name="t1", token="sk-t", created_at="2024-01-01T00:00:00+00:00")]
        )

    asyncio.run(scenario())
    snapshot = kv.snapshot()
    assert snapshot["api_keys"] == '[{"name": "k1", "value": "sk-1", "isHealthy": null}]'
    assert '"createdAt": "2024-01-01T00:00:00+00:00"' in snapshot["client_tokens"]


def test_yaml_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "store.yaml"

    async def write() -> None:
        store = CredentialStore(YamlFileKeyValueStore(path))
        await store.save_upstream_keys([UpstreamKey(name="k1", value="sk-1", is_healthy=True)])
        await store.save_cursor(0)

    asyncio.run(write())

    reopened = CredentialStore(YamlFileKeyValueStore(path))
    keys = asyncio.run(reopened.load_upstream_keys())
    assert [(key.name, key.value, key.is_healthy) for key in keys] == [("k1", "sk-1", True)]
    assert asyncio.run(reopened.load_cursor()) == 0

    on_disk = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert set(on_disk) == {"api_keys", "current_key_index"}


def test_yaml_store_reads_missing_file_as_empty(tmp_path: Path) -> None:
    kv = YamlFileKeyValueStore(tmp_path / "absent.yaml")
    assert asyncio.run(kv.get("api_keys")) is None


def test_record_key_result_counts_usage_and_errors() -> None:
    store = CredentialStore(InMemoryKeyValueStore())

    async def scenario() -> dict[str, KeyStats]:
        await store.record_key_result("k1", failed=False)
        await store.record_key_result("k1", failed=False)
        await store.record_key_result("k1", failed=True)
        await store.record_key_result("k2", failed=True)
        return await store.load_stats()

    stats = asyncio.run(scenario())
    assert stats == {"k1": KeyStats(usage=2, errors=1), "k2": KeyStats(usage=0, errors=1)}


def test_record_key_result_failure_is_logged_not_raised(caplog: Any) -> None:
    store = CredentialStore(_FailingKVStore())
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        asyncio.run(store.record_key_result("k1", failed=False))
    assert "key_stats_update_failed key=k1" in caplog.text


def test_apply_health_ignores_unknown_names() -> None:
    store = CredentialStore(InMemoryKeyValueStore())

    async def scenario() -> list[UpstreamKey]:
        await store.save_upstream_keys([UpstreamKey(name="k1", value="sk-1")])
        return await store.apply_health({"k1": True, "gone": False})

    keys = asyncio.run(scenario())
    assert [(key.name, key.is_healthy) for key in keys] == [("k1", True)]


def test_build_store_uses_yaml_backend(tmp_path: Path) -> None:
    store = build_key_value_store("yaml", path=tmp_path / "store.yaml")
    assert isinstance(store, YamlFileKeyValueStore)


def test_build_store_falls_back_to_memory_without_redis_url(caplog: Any) -> None:
    logger = logging.getLogger("uvicorn.error")
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        store = build_key_value_store("redis", redis_url=None, logger=logger)
    assert isinstance(store, InMemoryKeyValueStore)
    assert "store_redis_unconfigured" in caplog.text


def test_build_store_falls_back_to_memory_when_redis_factory_fails() -> None:
    def failing_factory(redis_url: str, key_prefix: str) -> Any:
        _ = (redis_url, key_prefix)
        msg = "redis unavailable"
        raise RuntimeError(msg)

    store = build_key_value_store(
        "redis",
        redis_url="redis://localhost:6379/0",
        logger=logging.getLogger("test"),
        create_redis_store=failing_factory,
    )
    assert isinstance(store, InMemoryKeyValueStore)


def test_build_store_uses_redis_factory_when_available() -> None:
    fake_store = InMemoryKeyValueStore()
    seen: dict[str, str] = {}

    def factory(redis_url: str, key_prefix: str) -> Any:
        seen["url"] = redis_url
        seen["prefix"] = key_prefix
        return fake_store

    store = build_key_value_store(
        "redis",
        redis_url="redis://localhost:6379/0",
        redis_key_prefix="keyproxy:",
        create_redis_store=factory,
    )
    assert store is fake_store
    assert seen == {"url": "redis://localhost:6379/0", "prefix": "keyproxy:"}


def test_redis_store_prefixes_keys_and_decodes_bytes() -> None:
    class _FakeRedis:
        def __init__(self) -> None:
            self.data: dict[str, bytes] = {}
            self.closed = False

        async def get(self, key: str) -> bytes | None:
            return self.data.get(key)

        async def set(self, key: str, value: str) -> None:
            self.data[key] = value.encode("utf-8")

        async def aclose(self) -> None:
            self.closed = True

    fake = _FakeRedis()
    store = RedisKeyValueStore(redis_client=fake, key_prefix="keyproxy:")

    async def scenario() -> str | None:
        await store.put("api_keys", "[]")
        value = await store.get("api_keys")
        await store.close()
        return value

    assert asyncio.run(scenario()) == "[]"
    assert set(fake.data) == {"keyproxy:api_keys"}
    assert fake.closed is True
