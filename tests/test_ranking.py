import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from kerasgraph.ranking import ScoredNode, nearest_nodes, rank_by_distance  # noqa: E402


ORDER = ["input", "lam", "a", "b", "lam-b", "c", "lam-c", "d"]


def test_nearest_nodes_ranks_by_absolute_distance():
    assert nearest_nodes("lam", "c", ["lam-b", "lam-c"], ORDER, k=2) == ["lam-b", "lam-c"]
    assert nearest_nodes("lam", "a", ["lam-b", "lam-c"], ORDER, k=2) == ["lam", "lam-b"]
    assert nearest_nodes("lam", "d", ["lam-b", "lam-c"], ORDER, k=1) == ["lam-c"]


def test_ties_prefer_earlier_position():
    # 'b' is one step from both 'a' and 'lam-b'.
    assert nearest_nodes("a", "b", ["lam-b"], ORDER, k=2) == ["a", "lam-b"]
    ranked = rank_by_distance("a", "b", ["lam-b"], ORDER)
    assert ranked == [ScoredNode("a", 1, 2), ScoredNode("lam-b", 1, 4)]


def test_full_ranking_includes_original_once():
    ranked = rank_by_distance("lam", "d", ["lam-b", "lam-c", "lam"], ORDER)
    assert [item.name for item in ranked] == ["lam-c", "lam-b", "lam"]
    assert [item.distance for item in ranked] == [1, 3, 6]


def test_k_larger_than_candidates_returns_everything():
    assert nearest_nodes("lam", "a", ["lam-b"], ORDER, k=5) == ["lam", "lam-b"]


def test_invalid_arguments():
    with pytest.raises(KeyError):
        nearest_nodes("lam", "missing", ["lam-b"], ORDER)
    with pytest.raises(KeyError):
        nearest_nodes("lam", "a", ["ghost"], ORDER)
    with pytest.raises(ValueError):
        nearest_nodes("lam", "a", ["lam-b"], ORDER, k=0)
