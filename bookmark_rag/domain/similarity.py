"""Pure similarity functions for the embedding index.

Linear scan is fine at personal-corpus scale (thousands of vectors).
"""

from collections.abc import Iterable, Sequence
from math import sqrt

from .types import Score, Vector


def cosine(u: Sequence[float], v: Sequence[float]) -> Score:
    """Compute cosine similarity between two vectors.

    Args:
        u: First vector
        v: Second vector

    Returns:
        Cosine similarity between -1 and 1; 0.0 for mismatched or zero vectors
    """
    if len(u) != len(v) or not u:
        return 0.0
    dot = sum(a * b for a, b in zip(u, v, strict=True))
    nu = sqrt(sum(a * a for a in u))
    nv = sqrt(sum(b * b for b in v))
    if nu == 0.0 or nv == 0.0:
        return 0.0
    return dot / (nu * nv)


def top_k_by_cosine(
    query: Vector,
    items: Iterable[tuple[str, Vector]],
    top_k: int,
    min_similarity: float = 0.0,
) -> list[tuple[str, Score]]:
    """Rank (id, vector) pairs against ``query``.

    Below-threshold items are discarded, not padded. Ties keep input order.
    """
    if top_k <= 0:
        return []
    scored = [(item_id, cosine(query, vec)) for item_id, vec in items]
    kept = [(item_id, s) for item_id, s in scored if s >= min_similarity]
    kept.sort(key=lambda p: p[1], reverse=True)
    return kept[:top_k]
