from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from openrouter_key_proxy.models import ClientToken, KeyStats, UpstreamKey
from openrouter_key_proxy.storage.kv import KeyValueStore

logger = logging.getLogger("uvicorn.error")

API_KEYS = "api_keys"
CLIENT_TOKENS = "client_tokens"
ADMIN_PASSWORD_HASH = "admin_password_hash"
CURRENT_KEY_INDEX = "current_key_index"
KEY_STATS = "key_stats"


@dataclass(slots=True)
class CredentialSnapshot:
    upstream_keys: list[UpstreamKey] = field(default_factory=list)
    client_tokens: list[ClientToken] = field(default_factory=list)
    admin_hash: str | None = None

    @property
    def is_password_set(self) -> bool:
        return bool(self.admin_hash)


class CredentialStore:
    """Typed view over the flat key-value store.

    Every save is a single ``put``. Read-modify-write sequences must hold
    ``mutation_lock``; it only serializes writers inside this process.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv
        self.mutation_lock = asyncio.Lock()

    async def load_all(self) -> CredentialSnapshot:
        upstream_keys, client_tokens, admin_hash = await asyncio.gather(
            self.load_upstream_keys(),
            self.load_client_tokens(),
            self.load_admin_hash(),
        )
        return CredentialSnapshot(
            upstream_keys=upstream_keys,
            client_tokens=client_tokens,
            admin_hash=admin_hash,
        )

    async def load_upstream_keys(self) -> list[UpstreamKey]:
        return await self._load_models(API_KEYS, UpstreamKey)

    async def load_client_tokens(self) -> list[ClientToken]:
        return await self._load_models(CLIENT_TOKENS, ClientToken)

    async def load_admin_hash(self) -> str | None:
        value = await self.kv.get(ADMIN_PASSWORD_HASH)
        if value is None:
            return None
        value = value.strip()
        return value or None

    async def save_upstream_keys(self, keys: list[UpstreamKey]) -> None:
        await self._put_json(API_KEYS, [key.to_store() for key in keys])

    async def save_client_tokens(self, tokens: list[ClientToken]) -> None:
        await self._put_json(CLIENT_TOKENS, [token.to_store() for token in tokens])

    async def save_admin_hash(self, password_hash: str) -> None:
        await self.kv.put(ADMIN_PASSWORD_HASH, password_hash)

    async def load_cursor(self) -> int:
        raw = await self.kv.get(CURRENT_KEY_INDEX)
        if raw is None:
            return -1
        try:
            return max(-1, int(raw.strip()))
        except ValueError:
            return -1

    async def save_cursor(self, cursor: int) -> None:
        await self.kv.put(CURRENT_KEY_INDEX, str(int(cursor)))

    async def load_stats(self) -> dict[str, KeyStats]:
        payload = await self._load_json(KEY_STATS, default={})
        if not isinstance(payload, dict):
            return {}
        stats: dict[str, KeyStats] = {}
        for name, raw in payload.items():
            try:
                stats[str(name)] = KeyStats.model_validate(raw)
            except ValidationError:
                continue
        return stats

    async def save_stats(self, stats: dict[str, KeyStats]) -> None:
        await self._put_json(
            KEY_STATS,
            {name: entry.model_dump() for name, entry in stats.items()},
        )

    async def record_key_result(self, name: str, *, failed: bool) -> None:
        # Counters are informational; losing one must not fail the request.
        try:
            async with self.mutation_lock:
                stats = await self.load_stats()
                entry = stats.setdefault(name, KeyStats())
                if failed:
                    entry.errors += 1
                else:
                    entry.usage += 1
                await self.save_stats(stats)
        except Exception as exc:
            logger.warning(
                "key_stats_update_failed key=%s failed=%s reason=%s",
                name,
                failed,
                str(exc),
            )

    async def apply_health(self, results: dict[str, bool]) -> list[UpstreamKey]:
        """Merge health results by key name into the latest stored list."""
        async with self.mutation_lock:
            keys = await self.load_upstream_keys()
            for key in keys:
                if key.name in results:
                    key.is_healthy = results[key.name]
            await self.save_upstream_keys(keys)
            return keys

    async def _load_models(self, key: str, model: Any) -> list[Any]:
        payload = await self._load_json(key, default=[])
        if not isinstance(payload, list):
            logger.warning("store_value_not_a_list key=%s", key)
            return []
        items: list[Any] = []
        for raw in payload:
            try:
                items.append(model.model_validate(raw))
            except ValidationError:
                logger.warning("store_entry_invalid key=%s", key)
        return items

    async def _load_json(self, key: str, *, default: Any) -> Any:
        raw = await self.kv.get(key)
        if raw is None or not raw.strip():
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("store_value_not_json key=%s", key)
            return default

    async def _put_json(self, key: str, payload: Any) -> None:
        await self.kv.put(key, json.dumps(payload, ensure_ascii=False))
