"""Text fingerprinting and similarity for semantic caching."""

import hashlib
import re
import unicodedata
from collections import OrderedDict
from typing import Iterable, List, Optional, Tuple

import numpy as np
import structlog

logger = structlog.get_logger()

STOPWORDS = frozenset(
    """
    a about an and are as at be been being but by can could did do does doing for from
    had has have having how i if in into is it its me my of on or our please should so
    some than that the their them then there these they this to us was we were what when
    where which who why will with would you your
    """.split()
)

FILLER_WORDS = frozenset(["um", "uh", "like", "basically", "actually", "literally", "just"])

# Longest suffixes first; a stem keeps at least MIN_STEM characters.
SUFFIXES = ("ations", "ation", "ings", "ing", "ers", "er", "edly", "ed", "ly", "ies", "es", "s")
MIN_STEM = 3

_URL_RE = re.compile(r"https?://\S+")
_EMAIL_RE = re.compile(r"\S+@\S+")
_NON_WORD_RE = re.compile(r"[^\w\s]")
_DIGITS_RE = re.compile(r"\d+")


def normalize_text(text: str) -> str:
    """Lowercase, strip accents, URLs, emails, punctuation and digits."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text.lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = _URL_RE.sub(" ", text)
    text = _EMAIL_RE.sub(" ", text)
    text = _NON_WORD_RE.sub(" ", text)
    text = _DIGITS_RE.sub(" ", text)
    return " ".join(text.split())


def stem(token: str) -> str:
    """Strip one common English suffix."""
    for suffix in SUFFIXES:
        if token.endswith(suffix) and len(token) - len(suffix) >= MIN_STEM:
            if suffix == "ies":
                return token[: -len(suffix)] + "y"
            return token[: -len(suffix)]
    return token


def tokenize(text: str) -> List[str]:
    """Content tokens of a text.

    Falls back to every normalized word when the text is made only of
    stopwords, so short prompts still get a non-empty fingerprint.
    """
    words = normalize_text(text).split()
    content = [w for w in words if w not in STOPWORDS and w not in FILLER_WORDS]
    if not content:
        content = words
    return [stem(w) for w in content]


def _feature_slot(token: str, dimensions: int) -> Tuple[int, float]:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, "big")
    sign = 1.0 if (value >> 63) == 0 else -1.0
    return value % dimensions, sign


class EmbeddingGenerator:
    """Feature-hashed bag-of-words embeddings.

    Deterministic across processes, which lets cache entries be exported and
    re-imported without recomputing vectors.
    """

    def __init__(self, dimensions: int = 256, cache_size: int = 2048):
        self.dimensions = dimensions
        self.cache_size = cache_size
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

    def embed_tokens(self, tokens: Iterable[str]) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for token in tokens:
            index, sign = _feature_slot(token, self.dimensions)
            vector[index] += sign
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector /= norm
        return vector

    def embed(self, text: str) -> np.ndarray:
        """Unit-length embedding for text (zero vector for empty text)."""
        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached

        vector = self.embed_tokens(tokenize(text))
        self._cache[text] = vector
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return vector

    def clear_cache(self):
        self._cache.clear()


class SimilarityCalculator:
    """Calculates similarity between embeddings."""

    @staticmethod
    def cosine_similarity(vec1: np.ndarray, vec2: np.ndarray) -> float:
        """Cosine similarity in [-1, 1]; 0.0 when either vector is zero."""
        norm1 = np.linalg.norm(vec1)
        norm2 = np.linalg.norm(vec2)
        if norm1 == 0 or norm2 == 0:
            return 0.0
        similarity = np.dot(vec1, vec2) / (norm1 * norm2)
        return float(np.clip(similarity, -1.0, 1.0))

    def find_most_similar(
        self,
        query: np.ndarray,
        candidates: Iterable[Tuple[str, np.ndarray]],
        threshold: float = 0.85,
    ) -> Optional[Tuple[str, float]]:
        """Best candidate key at or above threshold, or None."""
        best_key: Optional[str] = None
        best_score = -1.0
        for key, vector in candidates:
            score = self.cosine_similarity(query, vector)
            if score > best_score:
                best_key, best_score = key, score
        if best_key is None or best_score < threshold:
            return None
        return best_key, best_score
