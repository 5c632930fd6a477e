"""
Importance, decay and ranking model.

Importance is a retention/ranking priority in [0, max_importance]. It is
set once at store time, shrinks geometrically on each decay interval, and
grows (bounded) when an entry is returned by a search.
"""

import math
from dataclasses import dataclass
from datetime import datetime

LONG_CONTENT_CHARS = 1000
VERY_LONG_CONTENT_CHARS = 4000


def content_length_weight(length: int) -> float:
    """Weight of the content length bucket."""
    if length > VERY_LONG_CONTENT_CHARS:
        return 1.3
    if length > LONG_CONTENT_CHARS:
        return 1.2
    return 1.0


def clamp_importance(value: float, max_importance: float) -> float:
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), max_importance)


def calculate_importance(
    explicit_importance: float | None,
    content_length: int,
    tag_count: int,
    type_weight: float = 1.0,
    max_importance: float = 10.0,
) -> float:
    """
    Initial importance of a new entry.

    Args:
        explicit_importance: Caller-supplied multiplier (None means 1.0)
        content_length: Characters of content
        tag_count: Number of tags
        type_weight: Weight of the entry's type
        max_importance: Upper clamp

    Returns:
        Importance clamped to [0, max_importance]
    """
    importance = 1.0
    if explicit_importance is not None:
        importance *= explicit_importance
    importance *= content_length_weight(content_length)
    importance *= 1 + tag_count * 0.1
    importance *= type_weight
    return clamp_importance(importance, max_importance)


def decay(importance: float, decay_factor: float, intervals: int = 1) -> float:
    """Apply ``intervals`` decay steps, floored at 0."""
    if intervals <= 0:
        return importance
    return max(0.0, importance * decay_factor**intervals)


def reinforce(importance: float, boost: float, max_importance: float) -> float:
    return min(max_importance, importance + max(boost, 0.0))


def recency_score(timestamp: datetime, now: datetime, half_life_seconds: float) -> float:
    """1.0 for brand-new entries, halving every ``half_life_seconds``."""
    age = max((now - timestamp).total_seconds(), 0.0)
    return 0.5 ** (age / half_life_seconds)


@dataclass
class RankingWeights:
    """Weights of the hybrid ranking score."""

    similarity: float = 0.4
    importance: float = 0.3
    recency: float = 0.3


def hybrid_score(
    similarity: float,
    importance: float,
    recency: float,
    weights: RankingWeights,
    max_importance: float,
) -> float:
    """w1 * similarity + w2 * normalized importance + w3 * recency."""
    normalized = importance / max_importance if max_importance > 0 else 0.0
    return (
        weights.similarity * similarity
        + weights.importance * normalized
        + weights.recency * recency
    )


def keyword_score(importance: float, recency: float) -> float:
    return importance * recency
