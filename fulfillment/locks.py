"""
Seat Fulfillment — Named Lock Manager

Mutual exclusion over named keys for cooperative (asyncio) tasks. A task
names everything it is about to touch — the order, the buyer, the target
account — and runs its critical section only once it holds all of them.

Usage:
    locks = LockManager()
    result = await locks.with_locks(lock_keys_for(order), lambda: fulfill(order))

    async with locks.hold(["acct:7"]):
        ...

Names are deduplicated and always acquired in sorted order, so two tasks
sharing any subset of names can never wait on each other in a cycle.
Each name maps to one FIFO asyncio.Lock that is dropped again once no
holder or waiter references it. Acquisition never times out; every exit
path (return, exception, cancellation) releases what was acquired.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, TypeVar

from fulfillment.types import Order

logger = logging.getLogger("seat_fulfillment.locks")

T = TypeVar("T")


def lock_keys_for(order: Order) -> list[str]:
    """Lock scope for fulfilling one order."""
    return [
        f"credit:{order.order_no}",
        f"uid:{order.uid}",
        f"acct:{order.target_account_id}",
    ]


class LockManager:
    """Named, reference-counted asyncio locks."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _ref(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        self._refs[name] = self._refs.get(name, 0) + 1
        return lock

    def _unref(self, name: str) -> None:
        remaining = self._refs.get(name, 0) - 1
        if remaining <= 0:
            self._refs.pop(name, None)
            self._locks.pop(name, None)
        else:
            self._refs[name] = remaining

    @asynccontextmanager
    async def hold(self, names: Iterable[str]) -> AsyncIterator[tuple[str, ...]]:
        ordered = tuple(sorted({str(n) for n in names if n}))
        locks = [self._ref(name) for name in ordered]
        acquired: list[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for name in ordered:
                self._unref(name)

    async def with_locks(self, names: Iterable[str], body: Callable[[], Awaitable[T]]) -> T:
        """Run ``body`` while holding every lock in ``names``."""
        async with self.hold(names):
            return await body()

    def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()

    def active_names(self) -> list[str]:
        """Names currently held or waited on."""
        return sorted(self._refs)
