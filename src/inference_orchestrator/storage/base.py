"""Key-value store contract for assignments, cache entries and cost records."""

from abc import ABC, abstractmethod
from typing import Any, List, Optional


class KeyValueStore(ABC):
    """Minimal async key-value interface with optional per-key TTL.

    Values are JSON-compatible structures (dicts, lists, scalars).
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value or None when absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value, replacing any existing one."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store only when the key is absent. Returns True if written."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""

    @abstractmethod
    async def scan(self, prefix: str = "") -> List[str]:
        """List keys starting with prefix."""

    async def close(self) -> None:
        """Release backend resources."""
