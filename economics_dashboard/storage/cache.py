"""键值缓存接口及进程内 TTL 实现。"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple


class Cache(ABC):
    """异步键值缓存。实现需自行保证读写在有限时间内完成或抛出异常。"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """命中返回值，未命中或已过期返回 None。"""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """写入条目，ttl 为秒数，None 表示使用默认值。"""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """删除条目，不存在时静默返回。"""


class InMemoryCache(Cache):
    """
    进程内 TTL 缓存，适合单进程的 MCP 服务与测试。

    参数:
        default_ttl (int): 默认存活秒数，小于等于 0 表示永不过期。
    """

    def __init__(self, default_ttl: int = 600) -> None:
        self.default_ttl = default_ttl
        self._entries: Dict[str, Tuple[Optional[float], Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at is not None and expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        seconds = self.default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + seconds if seconds > 0 else None
        async with self._lock:
            self._entries[key] = (expires_at, value)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)
