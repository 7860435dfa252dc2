"""Stable bucketing for experiment assignment and flag rollout."""

import hashlib


def stable_hash(key: str) -> int:
    """64-bit BLAKE2b digest of the UTF-8 key as an unsigned integer.

    Identical across processes, platforms and Python versions, unlike
    the built-in ``hash``.
    """
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big")


def bucket(key: str, buckets: int = 100) -> int:
    """Map key uniformly onto [0, buckets)."""
    return stable_hash(key) % buckets


def assignment_bucket(user_id: str, experiment_id: str, salt: str) -> int:
    return bucket(f"{user_id}:{experiment_id}{salt}")


def rollout_bucket(user_id: str, flag_id: str, salt: str) -> int:
    return bucket(f"{user_id}:{flag_id}{salt}")
