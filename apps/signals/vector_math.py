# apps/signals/vector_math.py
from __future__ import annotations

import math
from typing import List, Sequence

from errors import DimensionMismatch


def magnitude(vec: Sequence[float]) -> float:
    return math.sqrt(sum(value * value for value in vec))


def normalize(vec: Sequence[float]) -> List[float]:
    """Scale to unit length. A zero vector comes back unchanged."""
    norm = magnitude(vec)
    if norm <= 0:
        return [float(value) for value in vec]
    return [value / norm for value in vec]


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if len(vec_a) != len(vec_b):
        raise DimensionMismatch(len(vec_a), len(vec_b))
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for a, b in zip(vec_a, vec_b):
        dot += a * b
        norm_a += a * a
        norm_b += b * b
    if norm_a <= 0 or norm_b <= 0:
        return 0.0
    return dot / math.sqrt(norm_a * norm_b)


def weighted_average(
    vectors: Sequence[Sequence[float]],
    weights: Sequence[float],
) -> List[float]:
    """
    Componentwise sum(v_i * w_i) / sum(w_i).
    All vectors must share one dimension; a zero weight sum yields the zero vector.
    """
    if len(vectors) != len(weights):
        raise DimensionMismatch(len(vectors), len(weights), what="vectors and weights")
    if not vectors:
        return []

    dim = len(vectors[0])
    accumulator = [0.0] * dim
    weight_sum = 0.0
    for vec, weight in zip(vectors, weights):
        if len(vec) != dim:
            raise DimensionMismatch(dim, len(vec))
        for idx, value in enumerate(vec):
            accumulator[idx] += value * weight
        weight_sum += weight

    if weight_sum == 0:
        return [0.0] * dim
    return [value / weight_sum for value in accumulator]


def subtract_scaled(base: Sequence[float], other: Sequence[float], factor: float) -> List[float]:
    if len(base) != len(other):
        raise DimensionMismatch(len(base), len(other))
    return [a - factor * b for a, b in zip(base, other)]
