"""
copytrader Core: Close Guard

Single-flight tracking for position closes plus per-asset serialization of
mirror buys. The polling scheduler and the trade feed both close positions;
this is the only place they meet.
"""

import asyncio
import threading
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Dict, Iterator, Set
import logging

logger = logging.getLogger(__name__)


class CloseGuard:
    """
    Set of position ids with a sell in flight.

    ``try_acquire`` is an atomic test-and-set, so two triggers can never
    both observe "not closing" before either marks it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._closing: Set[str] = set()

    def try_acquire(self, position_id: str) -> bool:
        with self._lock:
            if position_id in self._closing:
                return False
            self._closing.add(position_id)
            return True

    def release(self, position_id: str) -> None:
        with self._lock:
            self._closing.discard(position_id)

    def is_held(self, position_id: str) -> bool:
        with self._lock:
            return position_id in self._closing

    def held(self) -> Set[str]:
        with self._lock:
            return set(self._closing)

    def __len__(self) -> int:
        with self._lock:
            return len(self._closing)

    @contextmanager
    def hold(self, position_id: str) -> Iterator[bool]:
        """
        Acquire for the duration of a block.

        Yields the acquire result; the id is released on exit only if this
        block acquired it.
        """
        acquired = self.try_acquire(position_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(position_id)


class AssetLocks:
    """
    Per-asset asyncio locks.

    A lock exists only while some task holds or waits on it, so the map
    stays as small as the set of assets with work in flight.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, asset: str) -> AsyncIterator[None]:
        lock = self._locks.get(asset)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[asset] = lock
        self._users[asset] = self._users.get(asset, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[asset] -= 1
            if not self._users[asset]:
                del self._users[asset]
                del self._locks[asset]

    def is_locked(self, asset: str) -> bool:
        lock = self._locks.get(asset)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)
