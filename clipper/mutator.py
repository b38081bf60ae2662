"""
Serialized read-modify-write access to whole-collection store keys.

The storage layer only replaces entire values, so two interleaved
"read list, change one item, write list" sequences would silently lose
one side's change. Every mutation of a key therefore runs under that
key's asyncio.Lock.

The lock only covers writers that go through this mutator. As a second
line of defense each mutation re-reads the key just before writing and
compares it to what it started from; if someone else wrote in between,
the whole read-modify-write is retried. After MAX_MUTATION_ATTEMPTS
conflicts the mutation raises StoreWriteExhaustion.

Mutation functions receive deep copies and must be synchronous and free
of side effects: they may run more than once.
"""

import asyncio
import copy
import logging
from collections.abc import Callable, Iterable
from contextlib import AsyncExitStack
from typing import Any, TypeVar

from .errors import StoreWriteExhaustion
from .storage import Storage

logger = logging.getLogger(__name__)

MAX_MUTATION_ATTEMPTS = 3

T = TypeVar("T")

Collections = dict[str, list[Any]]


class StoreMutator:
    """Per-key serialized, optimistically checked collection writes."""

    def __init__(self, storage: Storage, *, max_attempts: int = MAX_MUTATION_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._storage = storage
        self._max_attempts = max_attempts
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def storage(self) -> Storage:
        return self._storage

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _read(self, keys: list[str], *, scalar: bool = False) -> Collections:
        values = await self._storage.get(keys)
        result: Collections = {}
        for key in keys:
            value = values.get(key)
            if scalar:
                result[key] = value
            else:
                result[key] = value if isinstance(value, list) else []
        return result

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def read_all(self, key: str) -> list[Any]:
        """Current contents of a collection; missing or malformed reads as []."""
        return (await self._read([key]))[key]

    async def write_all(self, key: str, items: Iterable[Any]) -> None:
        """Replace a collection wholesale, serialized with other mutations."""
        async with self._lock_for(key):
            await self._storage.set({key: list(items)})

    async def mutate(self, key: str, fn: Callable[[list[Any]], list[Any]]) -> list[Any]:
        """Apply ``fn`` to a collection and store the result. Returns the new list."""
        def apply(collections: Collections) -> tuple[Collections, list[Any]]:
            updated = fn(collections[key])
            return {key: updated}, updated
        return await self.mutate_many([key], apply)

    async def mutate_with_result(
        self,
        key: str,
        fn: Callable[[list[Any]], tuple[list[Any], T]],
    ) -> T:
        """Like mutate(), but ``fn`` returns ``(new_list, result)`` and result is returned."""
        def apply(collections: Collections) -> tuple[Collections, T]:
            updated, result = fn(collections[key])
            return {key: updated}, result
        return await self.mutate_many([key], apply)

    async def mutate_value(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """
        Read-modify-write a single non-collection value (None when missing).

        Runs under the key's lock with the same optimistic check as the
        collection mutations. Nothing is written when ``fn`` returns the
        current value. Returns the resulting value.
        """
        def apply(values: Collections) -> tuple[Collections, Any]:
            current = values[key]
            updated = fn(current)
            return ({} if updated == current else {key: updated}), updated

        async with self._lock_for(key):
            return await self._read_modify_write([key], apply, scalar=True)

    async def mutate_many(
        self,
        keys: Iterable[str],
        fn: Callable[[Collections], tuple[Collections, T]],
    ) -> T:
        """
        Read-modify-write several collections as one step.

        Locks are taken in sorted key order so two multi-key mutations
        cannot deadlock. ``fn`` receives ``{key: list}`` and returns
        ``({key: new_list}, result)``; only returned keys are written.

        Raises:
            StoreWriteExhaustion: if every attempt saw a concurrent write
        """
        ordered = sorted(set(keys))
        async with AsyncExitStack() as stack:
            for key in ordered:
                await stack.enter_async_context(self._lock_for(key))
            return await self._read_modify_write(ordered, fn)

    async def _read_modify_write(
        self,
        keys: list[str],
        fn: Callable[[Collections], tuple[Collections, T]],
        *,
        scalar: bool = False,
    ) -> T:
        for attempt in range(1, self._max_attempts + 1):
            snapshot = await self._read(keys, scalar=scalar)
            updated, result = fn(copy.deepcopy(snapshot))

            # Optimistic check: nobody outside this mutator wrote meanwhile
            current = await self._read(keys, scalar=scalar)
            if current != snapshot:
                logger.info(
                    "Concurrent write to %s detected (attempt %d/%d), retrying",
                    ",".join(keys), attempt, self._max_attempts,
                )
                continue

            writes = {k: v for k, v in updated.items() if k in keys}
            if writes:
                await self._storage.set(writes)
            return result

        logger.error(
            "Giving up on write to %s after %d conflicting attempts",
            ",".join(keys), self._max_attempts,
        )
        raise StoreWriteExhaustion(",".join(keys), self._max_attempts)
