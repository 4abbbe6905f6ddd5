"""
Similarity and heat scoring primitives.

Fscore = cos(e_s, e_p) + Jaccard(K_s, K_p)
Heat   = alpha * N_visit + beta * L_interaction + gamma * R_recency
"""

import math
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..utils.timestamp_utils import seconds_since

DEFAULT_TIME_CONSTANT = 1.0e7


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, zero-magnitude or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0

    dot_product = sum(x * y for x, y in zip(a, b))
    magnitude_a = math.sqrt(sum(x * x for x in a))
    magnitude_b = math.sqrt(sum(y * y for y in b))

    if magnitude_a == 0.0 or magnitude_b == 0.0:
        return 0.0
    # Clamp float noise so cos(v, v) stays within [-1, 1]
    return max(-1.0, min(1.0, dot_product / (magnitude_a * magnitude_b)))


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """|A ∩ B| / |A ∪ B| over token sets; 0.0 when both are empty."""
    set_a, set_b = set(a or []), set(b or [])
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def fscore(embedding_a: Sequence[float], embedding_b: Sequence[float], keywords_a: Iterable[str],
           keywords_b: Iterable[str]) -> float:
    """Combined topical similarity, roughly in [-1, 2]."""
    return cosine_similarity(embedding_a, embedding_b) + jaccard_similarity(keywords_a, keywords_b)


def recency_factor(last_accessed: datetime,
                   time_constant: float = DEFAULT_TIME_CONSTANT,
                   now: Optional[datetime] = None) -> float:
    """exp(-dt / time_constant), dt in seconds since last access (never negative)."""
    delta_t = seconds_since(last_accessed, now)
    return math.exp(-delta_t / time_constant)


def heat_score(visit_count: float,
               interaction_length: float,
               recency: float,
               alpha: float = 1.0,
               beta: float = 1.0,
               gamma: float = 1.0) -> float:
    return alpha * visit_count + beta * interaction_length + gamma * recency
