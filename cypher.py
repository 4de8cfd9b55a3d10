"""
Typed building blocks for the Cypher issued by the dialogue graph.

Relationship types and hop bounds are the only parts of a traversal that
cannot be passed as query parameters, so they are assembled here from an
enum and validated integers instead of free-form string concatenation.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class RelType(str, Enum):
    ROOT = "ROOT"
    NEXT = "NEXT"
    BRANCH_TO = "BRANCH_TO"


# Relationship types followed when walking a conversation forward
TRAVERSAL_TYPES: tuple[RelType, ...] = (RelType.NEXT, RelType.BRANCH_TO)

# ─── Bounds ───────────────────────────────────────────────────────────

LINEAR_PATH_MAX_HOPS = 25

GRAPH_DEPTH_MIN = 1
GRAPH_DEPTH_MAX = 25
GRAPH_DEPTH_DEFAULT = 10

RANDOM_DEPTH_MIN = 1
RANDOM_DEPTH_MAX = 50
RANDOM_DEPTH_DEFAULT = 20

DEFAULT_BRANCH_WEIGHT = 1.0
MIN_BRANCH_WEIGHT = 0.01


def clamp_depth(value: Optional[int], low: int, high: int, default: int) -> int:
    """Return ``value`` when it lies in ``[low, high]``, otherwise ``default``."""
    if value is None or not low <= value <= high:
        return default
    return value


def clamp_graph_depth(value: Optional[int]) -> int:
    return clamp_depth(value, GRAPH_DEPTH_MIN, GRAPH_DEPTH_MAX, GRAPH_DEPTH_DEFAULT)


def clamp_random_depth(value: Optional[int]) -> int:
    return clamp_depth(value, RANDOM_DEPTH_MIN, RANDOM_DEPTH_MAX, RANDOM_DEPTH_DEFAULT)


def clamp_weight(weight: Optional[float]) -> float:
    """Branch weights are strictly positive; non-positive input is floored."""
    if weight is None:
        return DEFAULT_BRANCH_WEIGHT
    if weight <= 0:
        return MIN_BRANCH_WEIGHT
    return float(weight)


# ─── Pattern builders ─────────────────────────────────────────────────

def rel_types(*types: RelType) -> str:
    """Render a relationship type alternation such as ``NEXT|BRANCH_TO``."""
    if not types:
        raise ValueError("At least one relationship type is required")
    for t in types:
        if not isinstance(t, RelType):
            raise TypeError(f"Unsupported relationship type: {t!r}")
    return "|".join(t.value for t in types)


def rel_pattern(
    *types: RelType,
    min_hops: Optional[int] = None,
    max_hops: Optional[int] = None,
    variable: str = "",
) -> str:
    """
    Render a relationship pattern body, e.g. ``[:NEXT*0..25]``.

    Without hop bounds the pattern is a single hop. Bounds must be
    non-negative integers with ``min_hops <= max_hops``.
    """
    body = f"{variable}:{rel_types(*types)}"
    if min_hops is None and max_hops is None:
        return f"[{body}]"

    low = 1 if min_hops is None else min_hops
    if max_hops is None:
        raise ValueError("Variable-length patterns must be bounded")
    for bound in (low, max_hops):
        if isinstance(bound, bool) or not isinstance(bound, int) or bound < 0:
            raise ValueError(f"Invalid hop bound: {bound!r}")
    if low > max_hops:
        raise ValueError(f"min_hops {low} exceeds max_hops {max_hops}")
    return f"[{body}*{low}..{max_hops}]"
