"""Per-connection serialization primitive.

Every writer of token material (the authorization flow's upsert and the
refresh coordinator) takes the lock for the connection identity it is
about to touch.  Locks are sharded by ``(user_id, service, account_label)``
so unrelated connections never wait on each other.

Locks are held weakly: once no coroutine references a lock it is dropped
from the table, so the table does not grow with the number of
connections ever seen.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import Hashable


class ConnectionLocks:
    """Table of ``asyncio.Lock`` objects keyed by connection identity."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[Hashable, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, key: Hashable) -> asyncio.Lock:
        """Return the lock for *key*, creating it on first use.

        Callers must keep the returned object referenced for as long as
        they hold or wait on it (``async with locks.get(key): ...`` does).
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)
