from __future__ import annotations

import numpy as np
import pytest

from isam_jit.core.types import POSE2
from isam_jit.core.values import Values
from isam_jit.optimization.isam import ISAM2, ISAM2Params
from isam_jit.optimization.solvers import GaussNewtonParams, GNConfig, gauss_newton
from isam_jit.slam.planar import PlanarGraph

TRUTH = {1: [0.0, 0.0, 0.0], 2: [2.0, 0.0, 0.0], 3: [4.0, 0.0, 0.0]}


def build_problem():
    """Three poses 2m apart along x: odometry between them, a position fix on each."""
    graph = PlanarGraph()
    graph.add_relative_pose(1, 2, [2.0, 0.0, 0.0], [0.2, 0.2, 0.1])
    graph.add_relative_pose(2, 3, [2.0, 0.0, 0.0], [0.2, 0.2, 0.1])
    for key, (x, y, _) in TRUTH.items():
        graph.add_position_prior(key, [x, y], [0.1, 0.1])

    initial = Values()
    initial.insert(1, [0.5, 0.0, 0.2], POSE2)
    initial.insert(2, [2.3, 0.1, -0.2], POSE2)
    initial.insert(3, [4.1, 0.1, 0.1], POSE2)
    return graph, initial


def _assert_near_truth(values, atol=1e-3):
    for key, expected in TRUTH.items():
        v = np.asarray(values[key])
        assert np.allclose(v[:2], expected[:2], atol=atol), f"x{key} = {v}"
        # compare headings on the circle
        assert abs(np.sin(v[2] - expected[2])) < atol


def test_batch_gauss_newton_localization():
    graph, initial = build_problem()
    estimate = gauss_newton(graph, initial, GNConfig(max_iters=10))
    _assert_near_truth(estimate)
    assert graph.error(estimate) == pytest.approx(0.0, abs=1e-8)


@pytest.mark.parametrize("factorization", ["cholesky", "qr"])
def test_isam2_localization_converges(factorization):
    """
    Odometry says 'drive 2m straight', GPS fixes pin each pose. The initial
    guesses are off by up to 0.5m and 0.2rad; relinearizing on every update
    should converge to the straight-line trajectory.
    """
    graph, initial = build_problem()
    params = ISAM2Params(
        optimization_params=GaussNewtonParams(wildfire_threshold=0.0),
        relinearize_threshold=1e-6,
        relinearize_skip=1,
        factorization=factorization,
    )
    isam = ISAM2(params)
    first = isam.update(graph, initial)
    assert first.variables_reeliminated == 3
    assert first.new_factor_indices == [0, 1, 2, 3, 4]

    for _ in range(6):
        isam.update()

    estimate = isam.calculate_estimate()
    _assert_near_truth(estimate)
    assert graph.error(estimate) == pytest.approx(0.0, abs=1e-8)
    assert isam.update_count == 7
