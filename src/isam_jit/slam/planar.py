"""
Factor builders for planar pose graphs with landmarks.

Each builder returns an immutable `Factor` wired to a residual from
`isam_jit.slam.measurements`, with its noise given as standard deviations.
`PlanarGraph` adds the same builders as methods on a `FactorGraph`, which is
the convenient way to assemble a batch of new factors for one smoother
update:

    graph = PlanarGraph()
    graph.add_pose_prior(0, [0.0, 0.0, 0.0], sigmas=[0.3, 0.3, 0.1])
    graph.add_relative_pose(0, 1, [2.0, 0.0, 0.0], sigmas=[0.2, 0.2, 0.1])
    isam.update(graph, initial_values)
"""

from __future__ import annotations

from typing import Sequence

from isam_jit.core.factor_graph import Factor, FactorGraph
from isam_jit.core.jax_init import jnp
from isam_jit.core.types import FactorIndex, Key
from isam_jit.slam.measurements import (
    between_pose2_residual,
    bearing_range_residual,
    position_residual,
    prior_pose2_residual,
    prior_residual,
    sigma_to_sqrt_info,
)


def _vec(v) -> jnp.ndarray:
    return jnp.asarray(v, dtype=jnp.float64)


def pose_prior(key: Key, pose: Sequence[float], sigmas: Sequence[float]) -> Factor:
    return Factor(
        "prior_pose2",
        (key,),
        prior_pose2_residual,
        {"target": _vec(pose), "weight": sigma_to_sqrt_info(sigmas)},
    )


def relative_pose(key_i: Key, key_j: Key, measurement: Sequence[float], sigmas: Sequence[float]) -> Factor:
    return Factor(
        "between_pose2",
        (key_i, key_j),
        between_pose2_residual,
        {"measurement": _vec(measurement), "weight": sigma_to_sqrt_info(sigmas)},
    )


def position_prior(key: Key, position: Sequence[float], sigmas: Sequence[float]) -> Factor:
    """GPS-like fix on the translation of a pose."""
    return Factor(
        "position_pose2",
        (key,),
        position_residual,
        {"target": _vec(position), "weight": sigma_to_sqrt_info(sigmas)},
    )


def point_prior(key: Key, point: Sequence[float], sigmas: Sequence[float]) -> Factor:
    return Factor(
        "prior_point2",
        (key,),
        prior_residual,
        {"target": _vec(point), "weight": sigma_to_sqrt_info(sigmas)},
    )


def bearing_range(
    pose_key: Key,
    point_key: Key,
    bearing: float,
    range_: float,
    sigmas: Sequence[float],
) -> Factor:
    return Factor(
        "bearing_range",
        (pose_key, point_key),
        bearing_range_residual,
        {"bearing": _vec(bearing), "range": _vec(range_), "weight": sigma_to_sqrt_info(sigmas)},
    )


class PlanarGraph(FactorGraph):
    """`FactorGraph` with builders for planar SLAM factors."""

    def add_pose_prior(self, key: Key, pose, sigmas) -> FactorIndex:
        return self.push_back(pose_prior(key, pose, sigmas))

    def add_relative_pose(self, key_i: Key, key_j: Key, measurement, sigmas) -> FactorIndex:
        return self.push_back(relative_pose(key_i, key_j, measurement, sigmas))

    def add_position_prior(self, key: Key, position, sigmas) -> FactorIndex:
        return self.push_back(position_prior(key, position, sigmas))

    def add_point_prior(self, key: Key, point, sigmas) -> FactorIndex:
        return self.push_back(point_prior(key, point, sigmas))

    def add_bearing_range(self, pose_key: Key, point_key: Key, bearing, range_, sigmas) -> FactorIndex:
        return self.push_back(bearing_range(pose_key, point_key, bearing, range_, sigmas))
