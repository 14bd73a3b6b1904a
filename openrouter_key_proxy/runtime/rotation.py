from __future__ import annotations

from collections.abc import Collection, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from openrouter_key_proxy.gateway.errors import NoHealthyKeyError, NoKeysConfiguredError
from openrouter_key_proxy.models import UpstreamKey

if TYPE_CHECKING:
    from openrouter_key_proxy.runtime.health import KeyHealthTracker
    from openrouter_key_proxy.storage.credentials import CredentialStore


@dataclass(slots=True)
class Selection:
    key: UpstreamKey
    index: int


def select_key(
    keys: Sequence[UpstreamKey],
    cursor: int,
    exclude: Collection[str] = (),
) -> Selection:
    """Pick the next usable key after ``cursor``, wrapping around the list.

    Keys with unknown health count as usable; only an explicit ``False`` is
    skipped. When nothing is usable this raises instead of falling back to
    an unhealthy key.
    """
    total = len(keys)
    if total == 0:
        raise NoKeysConfiguredError()

    start = (cursor + 1) % total
    for offset in range(total):
        index = (start + offset) % total
        key = keys[index]
        if key.is_healthy is False or key.name in exclude:
            continue
        return Selection(key=key, index=index)
    raise NoHealthyKeyError()


class KeyRotator:
    def __init__(self, store: CredentialStore, tracker: KeyHealthTracker) -> None:
        self.store = store
        self.tracker = tracker

    async def next_key(self, exclude: Collection[str] = ()) -> Selection:
        await self.tracker.maybe_sweep(self.store)
        async with self.store.mutation_lock:
            keys = await self.store.load_upstream_keys()
            cursor = await self.store.load_cursor()
            selection = select_key(keys, cursor, exclude)
            if selection.index != cursor:
                await self.store.save_cursor(selection.index)
        return selection
