"""Pluggable key-value storage backends."""

from .base import KeyValueStore
from .memory import InMemoryStore
from .redis_store import RedisStore

__all__ = ["KeyValueStore", "InMemoryStore", "RedisStore"]
