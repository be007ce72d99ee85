"""
app.core.locks
~~~~~~~~~~~~~~

按 key 分配的 ``asyncio.Lock``。

同一个 key（房间 ID、回答 ID）上的"读取 → 计算 → 写回"操作串行执行，
不同 key 之间互不阻塞。没有协程持有或等待时，锁会被自动回收。
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyedLocks:
    """按 key 懒创建、按引用计数回收的锁表。"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """独占 key 对应的锁。"""
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
