"""Semantic response cache with LRU capacity bound and TTL expiry."""

import asyncio
import hashlib
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

import numpy as np
import orjson

from inference_orchestrator.cache.embeddings import (
    EmbeddingGenerator,
    SimilarityCalculator,
    normalize_text,
    tokenize,
)
from inference_orchestrator.exceptions import CacheCorruption
from inference_orchestrator.schemas.inference import InferenceRequest, InferenceResponse
from inference_orchestrator.storage.base import KeyValueStore
from inference_orchestrator.telemetry.metrics import MetricsCollector

logger = logging.getLogger(__name__)

STORE_PREFIX = "cache:"


def cache_scope(request: InferenceRequest, variant: Optional[str] = None) -> str:
    """Entries are only ever compared within one capability, user and experiment arm."""
    scope = f"{request.capability}:{request.user_id}"
    return f"{scope}|{variant}" if variant else scope


def fingerprint(request: InferenceRequest, variant: Optional[str] = None) -> str:
    """Exact-match key over scope and normalized content tokens."""
    content = " ".join(sorted(tokenize(request.prompt_text())))
    raw = f"{cache_scope(request, variant)}|{content}|{normalize_text(request.prompt_text())}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    """A cached response and the fingerprint it was stored under."""

    fingerprint: str
    scope: str
    embedding: np.ndarray
    value: InferenceResponse
    created_at: float = field(default_factory=time.time)
    ttl: float = 86400.0
    hit_count: int = 0
    last_accessed: float = field(default_factory=time.time)
    prompt: str = ""

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if cache entry is expired."""
        return (now if now is not None else time.time()) - self.created_at >= self.ttl

    def touch(self, now: Optional[float] = None):
        """Update last accessed time and increment hit count."""
        self.last_accessed = now if now is not None else time.time()
        self.hit_count += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "fingerprint": self.fingerprint,
            "scope": self.scope,
            "embedding": self.embedding.tolist(),
            "value": self.value.model_dump(mode="json"),
            "created_at": self.created_at,
            "ttl": self.ttl,
            "hit_count": self.hit_count,
            "last_accessed": self.last_accessed,
            "prompt": self.prompt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], dimensions: Optional[int] = None) -> "CacheEntry":
        """Create from dictionary, raising CacheCorruption on malformed input."""
        try:
            embedding = np.asarray(data["embedding"], dtype=np.float32)
            if embedding.ndim != 1 or (dimensions is not None and embedding.shape[0] != dimensions):
                raise ValueError(f"embedding has shape {embedding.shape}")
            return cls(
                fingerprint=data["fingerprint"],
                scope=data["scope"],
                embedding=embedding,
                value=InferenceResponse.model_validate(data["value"]),
                created_at=float(data["created_at"]),
                ttl=float(data["ttl"]),
                hit_count=int(data.get("hit_count", 0)),
                last_accessed=float(data.get("last_accessed", data["created_at"])),
                prompt=data.get("prompt", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CacheCorruption(
                f"Invalid cache entry: {e}", key=data.get("fingerprint") if isinstance(data, dict) else None
            ) from e


@dataclass
class CacheStats:
    """Cache performance statistics."""

    hits: int = 0
    misses: int = 0
    stores: int = 0
    evictions: int = 0
    expirations: int = 0
    corrupt_entries: int = 0
    saved_cost_cents: float = 0.0
    avg_similarity_score: float = 0.0

    @property
    def total_queries(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        if self.total_queries == 0:
            return 0.0
        return self.hits / self.total_queries

    @property
    def miss_rate(self) -> float:
        """Calculate cache miss rate."""
        if self.total_queries == 0:
            return 0.0
        return 1.0 - self.hit_rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_queries": self.total_queries,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
            "miss_rate": round(self.miss_rate, 4),
            "stores": self.stores,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "corrupt_entries": self.corrupt_entries,
            "saved_cost_cents": round(self.saved_cost_cents, 6),
            "avg_similarity_score": round(self.avg_similarity_score, 4),
        }


class SemanticCache:
    """Similarity-matched response cache.

    Entries live in an in-process LRU map; an optional KeyValueStore keeps a
    write-through copy that ``load_from_store`` can hydrate from.
    """

    def __init__(
        self,
        similarity_threshold: float = 0.85,
        max_entries: int = 10000,
        default_ttl: float = 86400.0,
        dimensions: int = 256,
        store: Optional[KeyValueStore] = None,
        metrics: Optional[MetricsCollector] = None,
        sweep_interval: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        if not 0.0 < similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")
        self.similarity_threshold = similarity_threshold
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.backend = store
        self.metrics = metrics
        self.sweep_interval = sweep_interval
        self._clock = clock

        self.embedding_generator = EmbeddingGenerator(dimensions=dimensions)
        self.similarity_calculator = SimilarityCalculator()
        self.stats = CacheStats()

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._by_scope: Dict[str, Set[str]] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def dimensions(self) -> int:
        return self.embedding_generator.dimensions

    def similarity(self, request_a: InferenceRequest, request_b: InferenceRequest) -> float:
        """Similarity used for cache matching; 0.0 across capabilities or users."""
        if cache_scope(request_a) != cache_scope(request_b):
            return 0.0
        if fingerprint(request_a) == fingerprint(request_b):
            return 1.0
        return self.similarity_calculator.cosine_similarity(
            self.embedding_generator.embed(request_a.prompt_text()),
            self.embedding_generator.embed(request_b.prompt_text()),
        )

    def _index(self, entry: CacheEntry):
        self._entries[entry.fingerprint] = entry
        self._entries.move_to_end(entry.fingerprint)
        self._by_scope.setdefault(entry.scope, set()).add(entry.fingerprint)

    def _drop(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.pop(key, None)
        if entry is not None:
            keys = self._by_scope.get(entry.scope)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._by_scope[entry.scope]
        return entry

    def _validate(self, entry: CacheEntry):
        if not isinstance(entry.value, InferenceResponse):
            raise CacheCorruption("Cached value is not a response", key=entry.fingerprint)
        if entry.embedding.shape != (self.dimensions,):
            raise CacheCorruption("Cached embedding has wrong shape", key=entry.fingerprint)

    def _record(self, hit: bool, capability: str):
        if self.metrics is None:
            return
        name = "cache_hits" if hit else "cache_misses"
        self.metrics.increment_counter(name, labels={"capability": capability})

    def find(
        self, request: InferenceRequest, variant: Optional[str] = None
    ) -> Optional[Tuple[CacheEntry, float]]:
        """Best live entry for request with its similarity, or None.

        Does not touch counters; ``lookup`` is the observable read path.
        """
        now = self._clock()
        scope = cache_scope(request, variant)

        exact = self._entries.get(fingerprint(request, variant))
        if exact is not None:
            if exact.is_expired(now):
                self._drop(exact.fingerprint)
                self.stats.expirations += 1
            else:
                self._validate(exact)
                return exact, 1.0

        candidates = []
        for key in list(self._by_scope.get(scope, ())):
            entry = self._entries.get(key)
            if entry is None:
                continue
            if entry.is_expired(now):
                self._drop(key)
                self.stats.expirations += 1
                continue
            candidates.append((key, entry.embedding))

        if not candidates:
            return None

        query = self.embedding_generator.embed(request.prompt_text())
        match = self.similarity_calculator.find_most_similar(
            query, candidates, threshold=self.similarity_threshold
        )
        if match is None:
            return None
        entry = self._entries[match[0]]
        self._validate(entry)
        return entry, match[1]

    async def lookup(
        self, request: InferenceRequest, variant: Optional[str] = None
    ) -> Optional[InferenceResponse]:
        """Cached response for a sufficiently similar request. Never raises.

        ``variant`` keys the experiment arm, so answers never leak across arms.
        """
        try:
            found = self.find(request, variant)
        except CacheCorruption as e:
            self.stats.corrupt_entries += 1
            if e.key:
                self._drop(e.key)
            logger.warning(f"Corrupt cache entry treated as miss: {e.message}")
            found = None
        except Exception as e:
            logger.error(f"Error reading from cache: {e}")
            found = None

        if found is None:
            self.stats.misses += 1
            self._record(False, request.capability)
            return None

        entry, score = found
        entry.touch(self._clock())
        self._entries.move_to_end(entry.fingerprint)
        self.stats.hits += 1
        self.stats.saved_cost_cents += entry.value.cost_cents
        self.stats.avg_similarity_score = self.stats.avg_similarity_score * 0.9 + score * 0.1
        self._record(True, request.capability)
        logger.debug(f"Cache hit for {request.capability} with similarity {score:.3f}")
        return entry.value.model_copy(update={"cache_hit": True})

    async def store(
        self,
        request: InferenceRequest,
        response: InferenceResponse,
        ttl: Optional[float] = None,
        variant: Optional[str] = None,
    ) -> CacheEntry:
        """Cache a response, evicting least-recently-used entries past capacity."""
        now = self._clock()
        key = fingerprint(request, variant)
        self._drop(key)

        entry = CacheEntry(
            fingerprint=key,
            scope=cache_scope(request, variant),
            embedding=self.embedding_generator.embed(request.prompt_text()),
            value=response.model_copy(update={"cache_hit": False}),
            created_at=now,
            ttl=float(ttl or self.default_ttl),
            last_accessed=now,
            prompt=request.prompt_text(),
        )
        self._index(entry)
        self.stats.stores += 1

        while len(self._entries) > self.max_entries:
            oldest_key = next(iter(self._entries))
            self._drop(oldest_key)
            self.stats.evictions += 1
            if self.backend is not None:
                await self.backend.delete(STORE_PREFIX + oldest_key)

        if self.backend is not None:
            await self.backend.set(STORE_PREFIX + key, entry.to_dict(), ttl=entry.ttl)
        if self.metrics is not None:
            self.metrics.set_gauge("cache_size", len(self._entries))
        return entry

    async def invalidate(
        self,
        user_id: Optional[str] = None,
        capability: Optional[str] = None,
        pattern: Optional[str] = None,
    ) -> int:
        """Remove entries matching every given filter; pattern is a regex on the prompt."""
        regex = re.compile(pattern, re.IGNORECASE) if pattern else None
        doomed = []
        for key, entry in self._entries.items():
            base_scope = entry.scope.partition("|")[0]
            entry_capability, _, entry_user = base_scope.partition(":")
            if user_id is not None and entry_user != user_id:
                continue
            if capability is not None and entry_capability != capability:
                continue
            if regex is not None and not regex.search(entry.prompt):
                continue
            doomed.append(key)

        for key in doomed:
            self._drop(key)
            if self.backend is not None:
                await self.backend.delete(STORE_PREFIX + key)

        logger.info(f"Invalidated {len(doomed)} cache entries")
        return len(doomed)

    async def clear(self):
        """Remove every entry."""
        keys = list(self._entries)
        self._entries.clear()
        self._by_scope.clear()
        if self.backend is not None:
            for key in keys:
                await self.backend.delete(STORE_PREFIX + key)

    def clear_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._drop(key)
        self.stats.expirations += len(expired)
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        """Size, counters and entry age bounds."""
        stats = self.stats.to_dict()
        created = [entry.created_at for entry in self._entries.values()]
        stats.update(
            {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "similarity_threshold": self.similarity_threshold,
                "oldest_entry": datetime.utcfromtimestamp(min(created)).isoformat() if created else None,
                "newest_entry": datetime.utcfromtimestamp(max(created)).isoformat() if created else None,
            }
        )
        return stats

    def get_efficiency(self) -> Dict[str, Any]:
        """Derived efficiency indicators for dashboards."""
        total_hits = sum(entry.hit_count for entry in self._entries.values())
        return {
            "hit_rate": round(self.stats.hit_rate, 4),
            "saved_cost_cents": round(self.stats.saved_cost_cents, 6),
            "avg_hits_per_entry": round(total_hits / len(self._entries), 3) if self._entries else 0.0,
            "utilization": round(len(self._entries) / self.max_entries, 4),
        }

    async def warmup(self, pairs: Iterable[Tuple[InferenceRequest, InferenceResponse]]) -> int:
        """Pre-populate the cache from known request/response pairs."""
        count = 0
        for request, response in pairs:
            await self.store(request, response)
            count += 1
        logger.info(f"Cache warmed with {count} entries")
        return count

    def export_entries(self) -> bytes:
        """Serialize live entries as a JSON array."""
        now = self._clock()
        return orjson.dumps(
            [entry.to_dict() for entry in self._entries.values() if not entry.is_expired(now)]
        )

    def import_entries(self, data: bytes) -> int:
        """Load entries produced by ``export_entries``; skips expired and corrupt ones."""
        now = self._clock()
        imported = 0
        for raw in orjson.loads(data):
            try:
                entry = CacheEntry.from_dict(raw, dimensions=self.dimensions)
            except CacheCorruption as e:
                self.stats.corrupt_entries += 1
                logger.warning(f"Skipping corrupt cache entry on import: {e.message}")
                continue
            if entry.is_expired(now):
                continue
            self._drop(entry.fingerprint)
            self._index(entry)
            imported += 1

        while len(self._entries) > self.max_entries:
            self._drop(next(iter(self._entries)))
            self.stats.evictions += 1
        return imported

    async def load_from_store(self) -> int:
        """Hydrate the in-process index from the backing store."""
        if self.backend is None:
            return 0
        loaded = 0
        for key in await self.backend.scan(STORE_PREFIX):
            raw = await self.backend.get(key)
            if raw is None:
                continue
            try:
                entry = CacheEntry.from_dict(raw, dimensions=self.dimensions)
            except CacheCorruption:
                self.stats.corrupt_entries += 1
                await self.backend.delete(key)
                continue
            self._index(entry)
            loaded += 1
        logger.info(f"Loaded {loaded} cache entries from store")
        return loaded

    async def start(self):
        """Start the periodic TTL sweep."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self):
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            self.clear_expired()
            if self.metrics is not None:
                self.metrics.set_gauge("cache_size", len(self._entries))
