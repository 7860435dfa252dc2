"""In-process store backend."""

import copy
import time
from typing import Any, Dict, List, Optional, Tuple

from inference_orchestrator.storage.base import KeyValueStore


class InMemoryStore(KeyValueStore):
    """Dict-backed store with lazy TTL expiry.

    All methods run without awaiting, so each call is atomic with respect to
    other coroutines on the same event loop.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}

    def _alive(self, key: str) -> bool:
        item = self._data.get(key)
        if item is None:
            return False
        expires_at = item[1]
        if expires_at is not None and time.time() >= expires_at:
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> Optional[Any]:
        if not self._alive(key):
            return None
        return copy.deepcopy(self._data[key][0])

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expires_at = time.time() + ttl if ttl else None
        self._data[key] = (copy.deepcopy(value), expires_at)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        if self._alive(key):
            return False
        await self.set(key, value, ttl)
        return True

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def scan(self, prefix: str = "") -> List[str]:
        return [key for key in list(self._data) if key.startswith(prefix) and self._alive(key)]

    def __len__(self) -> int:
        return len(self._data)
