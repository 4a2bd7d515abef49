from __future__ import annotations

import math

import numpy as np
import pytest
from numpy.testing import assert_allclose

from isam_jit.core.exceptions import InvalidRemovalError, LinearizationError
from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.ordering import Ordering
from isam_jit.core.types import POINT2, POSE2
from isam_jit.core.values import Values
from isam_jit.slam.planar import PlanarGraph, bearing_range, position_prior, relative_pose


def _two_poses(theta: float = 0.3) -> Values:
    values = Values()
    values.insert(0, [1.0, 2.0, theta], POSE2)
    values.insert(1, [1.0, 2.0, theta], POSE2)
    return values


def test_slots_are_never_reused():
    graph = PlanarGraph()
    s0 = graph.add_pose_prior(0, [0.0, 0.0, 0.0], [1.0, 1.0, 1.0])
    s1 = graph.add_relative_pose(0, 1, [1.0, 0.0, 0.0], [1.0, 1.0, 1.0])
    assert (s0, s1) == (0, 1)

    graph.remove(s0)
    assert graph[s0] is None
    assert graph.size() == 1
    assert len(graph) == 2
    assert graph.push_back(relative_pose(1, 2, [1.0, 0.0, 0.0], [1.0, 1.0, 1.0])) == 2
    assert [slot for slot, _ in graph.live()] == [1, 2]


def test_invalid_removal():
    graph = PlanarGraph()
    slot = graph.add_pose_prior(0, [0.0, 0.0, 0.0], [1.0, 1.0, 1.0])
    graph.remove(slot)

    with pytest.raises(InvalidRemovalError):
        graph.remove(slot)
    with pytest.raises(InvalidRemovalError):
        graph.remove(7)
    # also an IndexError for callers that only know the builtin
    with pytest.raises(IndexError):
        graph.check_removable([-1])


def test_factors_touching():
    graph = PlanarGraph()
    graph.add_pose_prior(0, [0.0, 0.0, 0.0], [1.0, 1.0, 1.0])
    graph.add_relative_pose(0, 1, [1.0, 0.0, 0.0], [1.0, 1.0, 1.0])
    graph.add_relative_pose(1, 2, [1.0, 0.0, 0.0], [1.0, 1.0, 1.0])

    assert graph.factors_touching([0]) == [0, 1]
    assert graph.factors_touching([2]) == [2]
    graph.remove(1)
    assert graph.factors_touching([0, 1]) == [0, 2]
    assert graph.keys() == {0, 1, 2}


def test_between_pose2_jacobian_at_coincident_poses():
    """
    With x_i == x_j and a zero measurement, the relative-pose residual is
    Log(Exp(-d_i) Exp(d_j)) ≈ d_j - d_i, so the whitened Jacobian is
    [-W, W] with W = diag(1/sigma), and b = 0.
    """
    values = _two_poses()
    ordering = Ordering([0, 1])
    factor = relative_pose(0, 1, [0.0, 0.0, 0.0], [0.5, 0.5, 0.5])

    jf = factor.linearize(values, ordering)
    assert jf.keys == [0, 1]
    assert_allclose(jf.blocks[0], -2.0 * np.eye(3), atol=1e-9)
    assert_allclose(jf.blocks[1], 2.0 * np.eye(3), atol=1e-9)
    assert_allclose(jf.b, np.zeros(3), atol=1e-12)
    assert factor.error(values) == pytest.approx(0.0, abs=1e-18)


def test_position_jacobian_is_rotated_identity():
    values = Values()
    values.insert(5, [1.0, 1.0, math.pi / 2], POSE2)
    ordering = Ordering([5])
    factor = position_prior(5, [0.0, 0.0], [0.1, 0.1])

    jf = factor.linearize(values, ordering)
    expected = 10.0 * np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0]])
    assert_allclose(jf.blocks[0], expected, atol=1e-9)
    # b = -r = -(t - target) * weight
    assert_allclose(jf.b, [-10.0, -10.0], atol=1e-9)
    assert factor.error(values) == pytest.approx(0.5 * 200.0)


def test_bearing_range_residual_zero_at_truth():
    values = Values()
    values.insert(0, [0.0, 0.0, 0.0], POSE2)
    values.insert(100, [1.0, 1.0], POINT2)
    factor = bearing_range(0, 100, math.pi / 4, math.sqrt(2.0), [0.01, 0.1])
    assert_allclose(factor.residual(values), np.zeros(2), atol=1e-9)

    jf = factor.linearize(values, Ordering([0, 100]))
    assert jf.blocks[0].shape == (2, 3)
    assert jf.blocks[1].shape == (2, 2)


def test_linearize_missing_key_raises():
    values = Values()
    values.insert(0, [0.0, 0.0, 0.0], POSE2)
    factor = relative_pose(0, 1, [1.0, 0.0, 0.0], [1.0, 1.0, 1.0])

    with pytest.raises(LinearizationError) as info:
        factor.linearize(values, Ordering([0]))
    assert info.value.key == 1
    assert isinstance(info.value, KeyError)


def test_graph_linearize_and_error():
    values = _two_poses()
    graph = FactorGraph([relative_pose(0, 1, [1.0, 0.0, 0.0], [1.0, 1.0, 1.0])])
    linear = graph.linearize(values, Ordering([1, 0]))
    assert len(linear) == 1
    assert linear[0].keys == [1, 0]
    # residual Log(meas^-1) = [-1, 0, 0]
    assert graph.error(values) == pytest.approx(0.5)
