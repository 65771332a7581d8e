from __future__ import annotations

import hashlib
import random
from collections.abc import Sequence
from typing import TypeVar

T = TypeVar("T")


def derive_stream_seed(master_seed: int, stream_name: str) -> int:
    """Derive a deterministic child RNG seed from (master_seed, stream_name)."""
    digest = hashlib.sha256(f"{master_seed}:{stream_name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=False)


def weighted_index(rng: random.Random, weights: Sequence[float]) -> int:
    """Pick an index with probability proportional to its (non-negative) weight.

    All-zero weights fall back to a uniform pick so callers never have to
    special-case an exhausted pool.
    """
    if not weights:
        raise ValueError("weights must be a non-empty sequence")
    total_weight = sum(max(0.0, weight) for weight in weights)
    if total_weight <= 0.0:
        return rng.randrange(len(weights))
    draw = rng.random() * total_weight
    cumulative = 0.0
    for index, weight in enumerate(weights):
        cumulative += max(0.0, weight)
        if draw < cumulative:
            return index
    # Float rounding can leave draw == total_weight; the last positive weight wins.
    for index in range(len(weights) - 1, -1, -1):
        if weights[index] > 0.0:
            return index
    raise RuntimeError("weighted selection failed despite positive total weight")


def weighted_sample_without_replacement(
    rng: random.Random,
    items: Sequence[T],
    weights: Sequence[float],
    count: int,
) -> list[T]:
    if len(items) != len(weights):
        raise ValueError("items and weights must have the same length")
    pool = list(items)
    pool_weights = [float(weight) for weight in weights]
    picked: list[T] = []
    while pool and len(picked) < count:
        index = weighted_index(rng, pool_weights)
        picked.append(pool.pop(index))
        pool_weights.pop(index)
    return picked
