# kerasgraph/ranking.py

from __future__ import annotations

from typing import List, NamedTuple, Sequence


class ScoredNode(NamedTuple):
    """A candidate node scored by its distance from a target in an ordering."""

    name: str
    distance: int
    position: int


def _positions(order: Sequence[str]) -> dict:
    positions = {}
    for idx, name in enumerate(order):
        positions.setdefault(name, idx)
    return positions


def rank_by_distance(
    original: str,
    target: str,
    candidates: Sequence[str],
    order: Sequence[str],
) -> List[ScoredNode]:
    """
    Score ``candidates`` plus ``original`` by their absolute distance from
    ``target`` in ``order`` and return them nearest-first.

    Ties are broken by position in ``order``: the earlier node wins.
    """
    positions = _positions(order)
    if target not in positions:
        raise KeyError(f"Target {target!r} is not present in the ordering.")
    target_pos = positions[target]

    scored: List[ScoredNode] = []
    seen = set()
    for name in list(candidates) + [original]:
        if name in seen:
            continue
        if name not in positions:
            raise KeyError(f"Candidate {name!r} is not present in the ordering.")
        seen.add(name)
        pos = positions[name]
        scored.append(ScoredNode(name, abs(pos - target_pos), pos))
    scored.sort(key=lambda item: (item.distance, item.position))
    return scored


def nearest_nodes(
    original: str,
    target: str,
    candidates: Sequence[str],
    order: Sequence[str],
    k: int = 2,
) -> List[str]:
    """
    Names of the ``k`` nodes (among ``candidates`` and ``original``) closest
    to ``target`` in ``order``, nearest first.
    """
    if k < 1:
        raise ValueError("k must be >= 1")
    return [item.name for item in rank_by_distance(original, target, candidates, order)[:k]]
