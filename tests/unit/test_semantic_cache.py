"""Tests for the semantic cache."""

import numpy as np
import pytest

from inference_orchestrator.cache import CacheEntry, SemanticCache
from inference_orchestrator.cache.semantic_cache import STORE_PREFIX, fingerprint
from inference_orchestrator.exceptions import CacheCorruption
from inference_orchestrator.schemas.inference import InferenceResponse, TokenUsage
from inference_orchestrator.storage.memory import InMemoryStore


def make_response(request, content="Practice reflective listening.", cost=1.5):
    return InferenceResponse(
        request_id=request.id,
        content=content,
        token_usage=TokenUsage.from_counts(100, 200),
        cost_cents=cost,
        provider="anthropic",
        model="claude-3-5-sonnet-20241022",
    )


class TestSemanticCache:
    """Test suite for similarity-matched caching."""

    @pytest.mark.asyncio
    async def test_paraphrase_hits(self, make_request, clock):
        """A paraphrased prompt in the same scope is served from cache."""
        cache = SemanticCache(clock=clock)
        original = make_request("How do I listen better?")
        await cache.store(original, make_response(original))

        paraphrase = make_request("How can I be a better listener?")
        cached = await cache.lookup(paraphrase)

        assert cached is not None
        assert cached.cache_hit is True
        assert cached.content == "Practice reflective listening."
        assert cache.similarity(original, paraphrase) >= cache.similarity_threshold

    @pytest.mark.asyncio
    async def test_unrelated_prompt_misses(self, make_request, clock):
        cache = SemanticCache(clock=clock)
        original = make_request("How do I listen better?")
        await cache.store(original, make_response(original))

        assert await cache.lookup(make_request("Suggest a budget friendly date night")) is None
        assert cache.stats.misses == 1

    @pytest.mark.asyncio
    async def test_hits_satisfy_threshold(self, make_request, clock):
        """Every hit's request is at least threshold-similar to the stored one."""
        cache = SemanticCache(similarity_threshold=0.85, clock=clock)
        stored = make_request("Tips for resolving conflict calmly")
        await cache.store(stored, make_response(stored))

        for prompt in (
            "Tips for resolving conflict calmly",
            "tips for resolving conflicts calmly!",
            "What should we cook tonight?",
            "Resolving conflict",
        ):
            candidate = make_request(prompt)
            hit = await cache.lookup(candidate)
            if hit is not None:
                assert cache.similarity(stored, candidate) >= 0.85

    @pytest.mark.asyncio
    async def test_scope_isolation(self, make_request, clock):
        """Entries never cross users or capabilities."""
        cache = SemanticCache(clock=clock)
        original = make_request("How do I listen better?", user_id="alice")
        await cache.store(original, make_response(original))

        other_user = make_request("How do I listen better?", user_id="bob")
        other_capability = make_request("How do I listen better?", user_id="alice", capability="learning_coach")

        assert await cache.lookup(other_user) is None
        assert await cache.lookup(other_capability) is None
        assert cache.similarity(original, other_user) == 0.0

    @pytest.mark.asyncio
    async def test_exact_match_has_similarity_one(self, make_request, clock):
        cache = SemanticCache(clock=clock)
        request = make_request("What is active listening?")
        await cache.store(request, make_response(request))

        entry, score = cache.find(make_request("What is active listening?"))
        assert score == 1.0
        assert entry.fingerprint == fingerprint(request)

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, make_request, clock):
        cache = SemanticCache(default_ttl=60, clock=clock)
        request = make_request()
        await cache.store(request, make_response(request))

        clock.advance(59)
        assert await cache.lookup(request) is not None
        clock.advance(2)
        assert await cache.lookup(request) is None
        assert cache.stats.expirations == 1
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_lru_eviction(self, make_request, clock):
        """The least recently used entry is evicted past capacity."""
        cache = SemanticCache(max_entries=2, clock=clock)
        first = make_request("Ideas for anniversary gifts")
        second = make_request("Explain attachment styles")
        third = make_request("Morning routine for couples")

        await cache.store(first, make_response(first))
        await cache.store(second, make_response(second))
        await cache.lookup(first)
        await cache.store(third, make_response(third))

        assert len(cache) == 2
        assert cache.stats.evictions == 1
        assert await cache.lookup(second) is None
        assert await cache.lookup(first) is not None

    @pytest.mark.asyncio
    async def test_stats_and_saved_cost(self, make_request, clock, metrics):
        cache = SemanticCache(metrics=metrics, clock=clock)
        request = make_request()
        await cache.store(request, make_response(request, cost=2.0))

        await cache.lookup(request)
        await cache.lookup(make_request("Unrelated question about gardening"))

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["saved_cost_cents"] == 2.0
        assert stats["size"] == 1
        assert metrics.get_total("cache_hits") == 1
        assert metrics.get_total("cache_misses") == 1

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_a_miss(self, make_request, clock):
        """A corrupt entry is dropped and reported as a miss instead of raising."""
        cache = SemanticCache(dimensions=32, clock=clock)
        request = make_request()
        entry = await cache.store(request, make_response(request))
        entry.embedding = np.zeros(8, dtype=np.float32)

        assert await cache.lookup(request) is None
        assert cache.stats.corrupt_entries == 1
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_invalidate(self, make_request, clock):
        cache = SemanticCache(clock=clock)
        for user, prompt in (("alice", "Gift ideas"), ("alice", "Date night plans"), ("bob", "Gift ideas")):
            request = make_request(prompt, user_id=user)
            await cache.store(request, make_response(request))

        assert await cache.invalidate(user_id="alice", pattern="gift") == 1
        assert await cache.invalidate(capability="communication_advisor") == 2
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_write_through_and_reload(self, make_request, clock):
        """Entries written through to a store can hydrate a fresh cache."""
        store = InMemoryStore()
        cache = SemanticCache(store=store, clock=clock)
        request = make_request()
        await cache.store(request, make_response(request))

        assert await store.scan(STORE_PREFIX) == [STORE_PREFIX + fingerprint(request)]

        fresh = SemanticCache(store=store, clock=clock)
        assert await fresh.load_from_store() == 1
        assert await fresh.lookup(request) is not None

    @pytest.mark.asyncio
    async def test_export_import(self, make_request, clock):
        cache = SemanticCache(clock=clock)
        request = make_request()
        await cache.store(request, make_response(request))

        clone = SemanticCache(clock=clock)
        assert clone.import_entries(cache.export_entries()) == 1
        assert (await clone.lookup(request)).content == "Practice reflective listening."

    def test_entry_from_dict_rejects_garbage(self):
        with pytest.raises(CacheCorruption):
            CacheEntry.from_dict({"fingerprint": "abc", "embedding": "not-a-vector"})

    @pytest.mark.asyncio
    async def test_clear_expired(self, make_request, clock):
        cache = SemanticCache(default_ttl=10, clock=clock)
        request = make_request()
        await cache.store(request, make_response(request))
        await cache.store(make_request("Second prompt entirely"), make_response(request), ttl=100)

        clock.advance(11)
        assert cache.clear_expired() == 1
        assert len(cache) == 1

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            SemanticCache(similarity_threshold=0)

    @pytest.mark.asyncio
    async def test_store_is_callable_with_and_without_backend(self, make_request, clock):
        """The backing store lives on ``backend`` and never hides ``store()``."""
        backend = InMemoryStore()
        with_backend = SemanticCache(store=backend, clock=clock)
        without_backend = SemanticCache(clock=clock)
        assert with_backend.backend is backend
        assert without_backend.backend is None

        request = make_request()
        for cache in (with_backend, without_backend):
            await cache.store(request, make_response(request))
            assert (await cache.lookup(request)).content == "Practice reflective listening."

    @pytest.mark.asyncio
    async def test_warmup_populates_entries(self, make_request, clock):
        cache = SemanticCache(clock=clock)
        first = make_request("Ideas for anniversary gifts")
        second = make_request("Explain attachment styles")

        assert await cache.warmup([(first, make_response(first)), (second, make_response(second))]) == 2
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_variant_scope_isolation(self, make_request, clock):
        """Answers cached for one experiment arm never reach another arm or unassigned users."""
        cache = SemanticCache(clock=clock)
        request = make_request()
        await cache.store(request, make_response(request, content="Plain answer."))
        await cache.store(request, make_response(request, content="Warm answer."), variant="exp_tone:warm")

        assert (await cache.lookup(request)).content == "Plain answer."
        assert (await cache.lookup(request, variant="exp_tone:warm")).content == "Warm answer."
        assert await cache.lookup(request, variant="exp_tone:control") is None
        assert fingerprint(request) != fingerprint(request, "exp_tone:warm")

        assert await cache.invalidate(user_id="user_1") == 2

    @pytest.mark.asyncio
    async def test_efficiency(self, make_request, clock):
        cache = SemanticCache(max_entries=4, clock=clock)
        request = make_request()
        await cache.store(request, make_response(request, cost=2.0))
        await cache.lookup(request)
        await cache.lookup(request)

        efficiency = cache.get_efficiency()
        assert efficiency["hit_rate"] == 1.0
        assert efficiency["saved_cost_cents"] == 4.0
        assert efficiency["avg_hits_per_entry"] == 2.0
        assert efficiency["utilization"] == 0.25
