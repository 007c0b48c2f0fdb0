"""
Vector math shared by every search path.

Cosine similarity tolerant of malformed input (embeddings arrive from JSON
payloads and a worker process), plus the rank/dedupe policy used by both
corpus indexes and the content library.
"""

from dataclasses import dataclass
from typing import Any, Callable, Hashable, Iterable, Optional

import numpy as np


@dataclass
class ScoredItem:
    """An item paired with its similarity score."""
    item: Any
    score: float


def cosine_similarity(a: Optional[Iterable[float]], b: Optional[Iterable[float]]) -> float:
    """
    Compute cosine similarity between two vectors.

    Returns 0.0 instead of raising when either vector is missing, the
    lengths differ, the values are not numeric, or either norm is zero.
    """
    if a is None or b is None:
        return 0.0

    try:
        a_arr = np.asarray(a, dtype=np.float64)
        b_arr = np.asarray(b, dtype=np.float64)
    except (TypeError, ValueError):
        return 0.0

    if a_arr.ndim != 1 or a_arr.shape != b_arr.shape:
        return 0.0

    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


def rank_and_dedupe(
    items: Iterable[Any],
    score_fn: Callable[[Any], float],
    group_key_fn: Callable[[Any], Hashable],
    threshold: float,
    limit: int,
) -> list[ScoredItem]:
    """
    Score, filter, keep the best item per group, sort and truncate.

    Args:
        items: Candidates to rank
        score_fn: Returns the similarity score of a candidate
        group_key_fn: Returns the group (e.g. parent document id) of a candidate
        threshold: Minimum score to keep (inclusive)
        limit: Maximum number of results

    Returns:
        ScoredItem list sorted by descending score, at most one per group.
        On equal scores the first item seen in a group is kept.
    """
    best: dict = {}
    for item in items:
        score = score_fn(item)
        if score < threshold:
            continue
        key = group_key_fn(item)
        current = best.get(key)
        if current is None or score > current.score:
            best[key] = ScoredItem(item=item, score=score)

    ranked = sorted(best.values(), key=lambda s: s.score, reverse=True)
    return ranked[:max(limit, 0)]
