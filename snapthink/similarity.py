"""
Exhaustive cosine-similarity ranking.

Corpora are a few thousand chunks per session at most, so every query is
scored against every stored vector; there is no index to maintain.
"""

import logging
import math
from collections.abc import Iterable, Sequence
from typing import Any, Generic, NamedTuple, TypeVar

from .errors import InvalidArgument

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Scored(NamedTuple, Generic[T]):
    """A ranked corpus entry."""
    payload: T
    score: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine of the angle between two vectors.

    Returns 0.0 when either vector has zero norm (a zero vector has no
    direction).

    Raises:
        InvalidArgument: If the vectors differ in dimension
    """
    if len(a) != len(b):
        raise InvalidArgument(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def rank(
    query: Sequence[float],
    corpus: Iterable[tuple[Sequence[float], Any]],
    k: int | None = None,
) -> list[Scored]:
    """
    Score every ``(vector, payload)`` pair against ``query``.

    Results are sorted by descending score; equal scores keep corpus order.
    ``k`` truncates the result (None returns everything).

    Entries whose dimension differs from the query's came from a different
    embedding model; they are skipped with a warning rather than failing
    the whole ranking.
    """
    if k is not None and k <= 0:
        return []

    scored: list[Scored] = []
    skipped = 0
    for vector, payload in corpus:
        try:
            score = cosine_similarity(query, vector)
        except InvalidArgument:
            skipped += 1
            continue
        scored.append(Scored(payload, score))

    if skipped:
        logger.warning(
            "Skipped %d corpus vectors with dimension != %d", skipped, len(query)
        )

    # sorted() is stable, so ties stay in corpus order
    scored = sorted(scored, key=lambda s: s.score, reverse=True)
    return scored if k is None else scored[:k]
