"""
Weighted random walks over an extracted conversation subgraph.

Pure functions only: the engine extracts nodes and edges in one read
transaction and hands them here, which keeps sampling deterministic under a
seeded ``random.Random`` and testable without a database.
"""

from __future__ import annotations

import random
from typing import Iterable, Optional, Sequence

from cypher import RelType, clamp_weight
from schema import RelationEdge

Candidate = tuple[str, float]


def detect_root(node_ids: Sequence[str], relations: Iterable[RelationEdge]) -> Optional[str]:
    """
    Pick the walk's starting node: the first node (in extraction order) that
    is never the target of a NEXT edge inside the set. Falls back to the
    first node when every node has a NEXT predecessor, e.g. a NEXT cycle.
    """
    if not node_ids:
        return None
    next_targets = {r.to_id for r in relations if r.type == RelType.NEXT}
    for node_id in node_ids:
        if node_id not in next_targets:
            return node_id
    return node_ids[0]


def build_successors(relations: Iterable[RelationEdge]) -> dict[str, list[Candidate]]:
    """
    Map each node to its weighted continuations. NEXT edges weigh 1.0,
    BRANCH_TO edges carry their stored weight, floored to stay positive.
    Candidates are sorted so a seeded walk is reproducible.
    """
    successors: dict[str, list[Candidate]] = {}
    for rel in relations:
        if rel.type == RelType.NEXT:
            weight = 1.0
        elif rel.type == RelType.BRANCH_TO:
            weight = clamp_weight(rel.weight)
        else:
            continue
        successors.setdefault(rel.from_id, []).append((rel.to_id, weight))
    for candidates in successors.values():
        candidates.sort()
    return successors


def roulette_select(candidates: Sequence[Candidate], rng: random.Random) -> str:
    """Choose a candidate with probability proportional to its weight."""
    if not candidates:
        raise ValueError("No candidates to select from")
    total = sum(weight for _, weight in candidates)
    draw = rng.random() * total
    cumulative = 0.0
    for node_id, weight in candidates:
        cumulative += weight
        if cumulative >= draw:
            return node_id
    # Floating point slack on the last bucket
    return candidates[-1][0]


def weighted_walk(
    start: str,
    successors: dict[str, list[Candidate]],
    max_steps: int,
    rng: random.Random,
) -> list[str]:
    """Walk forward from ``start`` for at most ``max_steps`` transitions."""
    path = [start]
    current = start
    for _ in range(max_steps):
        candidates = successors.get(current)
        if not candidates:
            break
        current = roulette_select(candidates, rng)
        path.append(current)
    return path
