"""依赖展开结果缓存

两层:
- 带时间戳层 {timestamp: {key: {cache_id: result}}}，条目一经写入不再覆盖，
  新的时间戳自然让旧条目失效
- 无时间戳层 {key: {cache_id: result}}，可随时整体清空

读取总是返回新列表，调用方修改结果不会污染缓存。
"""

from __future__ import annotations

import threading
from typing import Hashable

from cellar.core.deps.dependency import DependencyEdge


class ExpansionCache:
    """展开结果缓存，线程安全"""

    def __init__(self) -> None:
        self._timestamped: dict[Hashable, dict[str, dict[str, list[DependencyEdge]]]] = {}
        self._not_timestamped: dict[str, dict[str, list[DependencyEdge]]] = {}
        self._lock = threading.Lock()

    def _bucket(self, key: str, timestamp: Hashable | None) -> dict[str, list[DependencyEdge]]:
        if timestamp is not None:
            return self._timestamped.setdefault(timestamp, {}).setdefault(key, {})
        return self._not_timestamped.setdefault(key, {})

    def get(
        self, key: str, cache_id: str, *, timestamp: Hashable | None = None,
    ) -> list[DependencyEdge] | None:
        with self._lock:
            entry = self._bucket(key, timestamp).get(cache_id)
            return list(entry) if entry is not None else None

    def put(
        self, key: str, cache_id: str, result: list[DependencyEdge], *,
        timestamp: Hashable | None = None,
    ) -> None:
        with self._lock:
            bucket = self._bucket(key, timestamp)
            if timestamp is not None and cache_id in bucket:
                return
            bucket[cache_id] = list(result)

    def clear(self) -> None:
        """只清空无时间戳层"""
        with self._lock:
            self._not_timestamped.clear()

    def delete_timestamped_entry(self, key: str, timestamp: Hashable) -> None:
        with self._lock:
            entry = self._timestamped.get(timestamp)
            if entry is None:
                return
            entry.pop(key, None)
            if not entry:
                del self._timestamped[timestamp]

    def __len__(self) -> int:
        with self._lock:
            stamped = sum(len(b) for t in self._timestamped.values() for b in t.values())
            return stamped + sum(len(b) for b in self._not_timestamped.values())
