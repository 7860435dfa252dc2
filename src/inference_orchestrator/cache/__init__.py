"""Semantic response caching."""

from .embeddings import EmbeddingGenerator, SimilarityCalculator, normalize_text, tokenize
from .semantic_cache import CacheEntry, CacheStats, SemanticCache, cache_scope, fingerprint

__all__ = [
    "CacheEntry",
    "CacheStats",
    "EmbeddingGenerator",
    "SemanticCache",
    "SimilarityCalculator",
    "cache_scope",
    "fingerprint",
    "normalize_text",
    "tokenize",
]
