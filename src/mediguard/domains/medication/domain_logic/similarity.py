"""Similarity scoring between feature vectors.

Pure functions: no state, no I/O, safe to call concurrently.
"""

from __future__ import annotations

import math
from typing import Sequence

from mediguard.domains.medication.domain_logic.match_models import (
    INCOMPARABLE,
    ScoreBundle,
    SimilarityWeights,
    _Incomparable,
)

DEFAULT_WEIGHTS = SimilarityWeights()


def comparable(a: Sequence[float] | None, b: Sequence[float] | None) -> bool:
    """Both present, non-empty and of equal length."""
    return bool(a) and bool(b) and len(a) == len(b)  # type: ignore[arg-type]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float | _Incomparable:
    if not comparable(a, b):
        return INCOMPARABLE
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return INCOMPARABLE
    cos = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    # Rounding can push identical vectors a hair past 1
    return max(-1.0, min(1.0, cos))


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float | _Incomparable:
    if not comparable(a, b):
        return INCOMPARABLE
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def score(
    a: Sequence[float] | None,
    b: Sequence[float] | None,
    weights: SimilarityWeights = DEFAULT_WEIGHTS,
) -> ScoreBundle | _Incomparable:
    """Score two vectors.

    Returns ``INCOMPARABLE`` (never raises, never a number) when either vector
    is missing, lengths differ, or either norm is zero.
    """
    if a is None or b is None or not comparable(a, b):
        return INCOMPARABLE

    cos = cosine_similarity(a, b)
    if cos is INCOMPARABLE:
        return INCOMPARABLE
    distance = euclidean_distance(a, b)
    normalized = 1.0 / (1.0 + distance)  # type: ignore[operator]

    return ScoreBundle(
        cosine=cos,  # type: ignore[arg-type]
        normalized_euclidean=normalized,
        combined=weights.cosine * cos + weights.euclidean * normalized,  # type: ignore[operator]
    )


def average_vectors(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Element-wise mean of equal-length vectors."""
    if not vectors:
        raise ValueError("At least one vector is required")
    length = len(vectors[0])
    if any(len(v) != length for v in vectors):
        raise ValueError("Cannot average vectors of different lengths")
    return [sum(column) / len(vectors) for column in zip(*vectors)]
