# classroom_scheduler/services/locks.py
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from weakref import WeakValueDictionary

_meeting_locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()


def _lock_for(meeting_id: str) -> asyncio.Lock:
    lock = _meeting_locks.get(meeting_id)
    if lock is None:
        lock = asyncio.Lock()
        _meeting_locks[meeting_id] = lock
    return lock


@asynccontextmanager
async def meeting_lock(meeting_id: str) -> AsyncIterator[None]:
    """
    Serialize writers of one meeting's occurrences within this process.

    Cross-process exclusion comes from the `SELECT ... FOR UPDATE` taken on
    the meeting row inside the same block.
    """
    lock = _lock_for(meeting_id)
    async with lock:
        yield
