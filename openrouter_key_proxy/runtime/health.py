from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from openrouter_key_proxy.models import UpstreamKey
    from openrouter_key_proxy.storage.credentials import CredentialStore

logger = logging.getLogger("uvicorn.error")

ProbeFn = Callable[[str], Awaitable[bool]]


class KeyHealthTracker:
    """Periodically probes every upstream key and records the result.

    Only one sweep runs at a time; callers arriving while a sweep is in
    flight carry on with the health already stored.
    """

    def __init__(
        self,
        probe: ProbeFn,
        interval_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._probe = probe
        self._interval_seconds = float(interval_seconds)
        self._clock = clock
        self._last_sweep_at: float | None = None
        self._sweeping = False

    @property
    def sweeping(self) -> bool:
        return self._sweeping

    @property
    def last_sweep_at(self) -> float | None:
        return self._last_sweep_at

    def is_due(self) -> bool:
        if self._interval_seconds <= 0:
            return False
        if self._last_sweep_at is None:
            return True
        return self._clock() - self._last_sweep_at > self._interval_seconds

    async def maybe_sweep(self, store: CredentialStore) -> bool:
        if self._sweeping or not self.is_due():
            return False
        await self.sweep(store)
        return True

    async def sweep(self, store: CredentialStore) -> dict[str, bool]:
        if self._sweeping:
            return {}
        self._sweeping = True
        started = self._clock()
        try:
            keys = await store.load_upstream_keys()
            results = await self._probe_all(keys)
            if results:
                await store.apply_health(results)
            logger.info(
                "health_sweep_complete keys=%d healthy=%d unhealthy=%d",
                len(results),
                sum(1 for healthy in results.values() if healthy),
                sum(1 for healthy in results.values() if not healthy),
            )
            return results
        finally:
            self._last_sweep_at = started
            self._sweeping = False

    async def probe_key(self, name: str, value: str) -> bool:
        try:
            return bool(await self._probe(value))
        except Exception as exc:
            logger.warning(
                "health_probe_failed key=%s error_type=%s error=%s",
                name,
                exc.__class__.__name__,
                str(exc),
            )
            return False

    async def _probe_all(self, keys: list[UpstreamKey]) -> dict[str, bool]:
        outcomes = await asyncio.gather(
            *(self.probe_key(key.name, key.value) for key in keys)
        )
        return {key.name: healthy for key, healthy in zip(keys, outcomes, strict=True)}
