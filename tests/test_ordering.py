from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose

from isam_jit.core.ordering import Ordering, Permutation
from isam_jit.core.types import POINT2, POSE2
from isam_jit.core.values import Values
from isam_jit.linear.ordering_heuristics import constrained_min_degree
from isam_jit.linear.vector_values import Permuted, VectorValues
from isam_jit.optimization.isam_impl import add_variables, compute_reordering, constraint_groups


def test_permutation_inverse():
    p = Permutation([2, 0, 1])
    inv = p.inverse()
    assert list(inv) == [1, 2, 0]
    for i in range(3):
        assert inv[p[i]] == i
    assert p.is_bijection()
    assert not Permutation([0, 0]).is_bijection()

    ident = Permutation.identity(3)
    assert list(ident) == [0, 1, 2]
    assert ident.inverse() == ident


def test_ordering_push_back_and_permute():
    ordering = Ordering(["a", "b", "c"])
    assert ordering["c"] == 2
    assert ordering.key(1) == "b"

    ordering.permute_with_inverse([2, 0, 1])
    assert ordering["a"] == 2
    assert ordering["b"] == 0
    assert ordering["c"] == 1
    assert ordering.keys() == ["b", "c", "a"]

    with pytest.raises(ValueError):
        ordering.push_back("a")
    with pytest.raises(ValueError):
        ordering.permute_with_inverse([0, 1])


def test_permuted_relabel_keeps_slots():
    """
    Two successive relabellings compose: every stored vector stays in its
    slot and is reachable through the new indices.
    """
    d = Permuted.empty()
    for i in range(3):
        d.push_back(np.full(2, float(i)))

    d.permute_with_inverse([1, 0, 2])
    assert_allclose(d[0], [1.0, 1.0])
    assert_allclose(d[1], [0.0, 0.0])

    d.permute_with_inverse([0, 2, 1])
    assert_allclose(d[0], [1.0, 1.0])
    assert_allclose(d[1], [2.0, 2.0])
    assert_allclose(d[2], [0.0, 0.0])

    # storage never moved
    for slot in range(3):
        assert_allclose(d.container[slot], np.full(2, float(slot)))


def test_vector_values_dimension_check():
    vv = VectorValues.zero([3, 2])
    vv[1] = [1.0, 2.0]
    with pytest.raises(ValueError):
        vv[0] = [1.0, 2.0]
    assert_allclose(vv.vector(), [0.0, 0.0, 0.0, 1.0, 2.0])


def test_add_variables():
    """
    Existing system: pose 0 at index 0, point 100 at index 1, with the
    delta stored in swapped slots (permutation [1, 0]). Adding pose 1
    appends index 2 backed by a fresh zero slot: permutation [1, 0, 2].
    """
    theta = Values()
    theta.insert(0, [0.5, 0.3, 0.1], POSE2)
    theta.insert(100, [5.0, 3.0], POINT2)
    ordering = Ordering([0, 100])
    delta = Permuted(Permutation([1, 0]), VectorValues([[0.4, 0.5], [0.1, 0.2, 0.3]]))

    new_theta = Values()
    new_theta.insert(1, [1.5, 0.3, 0.1], POSE2)
    added = add_variables(new_theta, theta, ordering, [delta])

    assert added == [1]
    assert ordering[1] == 2
    assert delta.permutation == Permutation([1, 0, 2])
    assert_allclose(delta[0], [0.1, 0.2, 0.3])
    assert_allclose(delta[1], [0.4, 0.5])
    assert_allclose(delta[2], np.zeros(3))
    assert theta.var_type(1) == POSE2
    assert_allclose(theta[1], [1.5, 0.3, 0.1])


def test_min_degree_eliminates_leaves_before_hub():
    order = constrained_min_degree(["c", "l1", "l2", "l3"], [("c", "l1"), ("c", "l2"), ("c", "l3")])
    assert order[:2] == ["l1", "l2"]
    assert sorted(order) == ["c", "l1", "l2", "l3"]


def test_min_degree_respects_groups():
    order = constrained_min_degree(["a", "b", "c"], [("a", "b"), ("b", "c")], groups={"a": 1})
    assert order[-1] == "a"
    order = constrained_min_degree(["a", "b", "c"], [("a", "b"), ("b", "c")], groups={"a": 2, "b": 1})
    assert order == ["c", "b", "a"]


def test_compute_reordering_moves_affected_last():
    ordering = Ordering(["a", "b", "c", "d"])

    order, inverse = compute_reordering(ordering, {"b", "d"}, [("b", "d")])
    assert order == ["b", "d"]
    assert list(inverse) == [0, 2, 1, 3]

    order, inverse = compute_reordering(ordering, {"b", "d"}, [("b", "d")], groups={"b": 1})
    assert order == ["d", "b"]
    assert list(inverse) == [0, 3, 1, 2]


def test_constraint_groups_default_to_new_factor_keys():
    affected = {1, 2, 3}
    assert constraint_groups(affected, None, {2, 3}, n_variables=5) == {2: 1, 3: 1}
    assert constraint_groups(affected, None, {1, 2, 3}, n_variables=3) == {}
    assert constraint_groups(affected, {3: 1, 7: 2}, {2}, n_variables=5) == {3: 1}
