from __future__ import annotations

"""
缓存抽象（最小版本）。

当前提供：
- `Cache` Protocol：定义 get/set/delete/clear 接口
- `InMemoryCache`：进程内实现，graph store 与 semantic index 用它保存 filePath -> checksum

后续扩展点：
- Redis 实现（多进程共享 checksum，避免重复索引）
"""

from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import Protocol


class Cache(Protocol):
    """缓存接口协议（用于依赖倒置，方便替换 Redis/Memory）。"""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


@dataclass
class InMemoryCache:
    """内存缓存：不提供过期机制，进程重启即丢失（可通过重新索引重建）。"""

    store: MutableMapping[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str | None:
        return self.store.get(key)

    def set(self, key: str, value: str) -> None:
        self.store[key] = value

    def delete(self, key: str) -> None:
        self.store.pop(key, None)

    def clear(self) -> None:
        self.store.clear()

    def __len__(self) -> int:
        return len(self.store)
