# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Residual models (measurement factors) for planar SLAM.

Each function here implements a whitened residual

    r(x; params) ∈ ℝᵏ

over the stacked values ``x`` of the factor's variables, written in JAX so
that `isam_jit.optimization.jit_wrappers` can differentiate it through the
manifold retraction.

1. Priors
---------
    • `prior_pose2_residual`:
        r = Log( target⁻¹ ∘ x )           (pose2)

    • `position_residual`:
        r = x[:2] − target                (GPS-like fix on a pose2)

    • `prior_residual`:
        r = x − target                    (any Euclidean variable)

2. Motion
---------
    • `between_pose2_residual`:
        r = Log( meas⁻¹ ∘ (x_i⁻¹ ∘ x_j) )

3. Landmarks
------------
    • `bearing_range_residual`:
        Bearing (wrapped to (−π, π]) and range from a pose2 to a point2,
        both measured in the pose frame.

Weighting and Noise Models
--------------------------
All residuals are whitened by `_apply_weight` through the ``"weight"``
entry of ``params``:

    - scalar ``w``: interpreted as information, r' = sqrt(w) · r
    - vector ``w``: per-component square-root information, r' = w · r

`sigma_to_sqrt_info` converts standard deviations to the vector form, which
is how every builder in `isam_jit.slam.planar` specifies its noise.
"""

from __future__ import annotations
from typing import Dict

from isam_jit.core.jax_init import jnp
from isam_jit.core.math2d import relative_pose_se2, se2_log, transform_to_local, wrap_angle


def _apply_weight(residual: jnp.ndarray, params: dict, key: str = "weight") -> jnp.ndarray:
    """
    Optional weighting of residuals.

    If params[key] is:
      - missing: no change
      - scalar:  r' = sqrt(w) * r          (scalar weight)
      - vector:  r' = w * r                (per-component sqrt-info)
    """
    w = params.get(key, None)
    if w is None:
        return residual

    w = jnp.asarray(w)

    if w.ndim == 0:
        return jnp.sqrt(w) * residual
    return w * residual


def sigma_to_sqrt_info(sigma) -> jnp.ndarray:
    """
    Convert standard deviations to a per-component sqrt-information vector
    usable by `_apply_weight`: w[i] = 1 / sigma[i].
    """
    s = jnp.atleast_1d(jnp.asarray(sigma, dtype=jnp.float64))
    return 1.0 / s


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Simple prior on a single Euclidean variable:
        residual = x - target
    """
    r = x - params["target"]
    return _apply_weight(r, params)


def prior_pose2_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """Prior on a planar pose measured in the tangent space of the target."""
    r = se2_log(relative_pose_se2(params["target"], x[:3]))
    return _apply_weight(r, params)


def position_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """Unary position fix on the translation of a planar pose."""
    r = x[:2] - params["target"]
    return _apply_weight(r, params)


def between_pose2_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Relative pose (odometry / loop closure) between two planar poses.

    x = [pose_i(3), pose_j(3)], params["measurement"] is the pose of j in
    the frame of i.
    """
    xi_est = relative_pose_se2(x[:3], x[3:6])
    r = se2_log(relative_pose_se2(params["measurement"], xi_est))
    return _apply_weight(r, params)


def bearing_range_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Bearing and range from a planar pose to a planar landmark.

    x = [pose(3), point(2)]

    params:
      - "bearing": measured bearing in the pose frame (radians)
      - "range":   measured distance
      - "weight":  sqrt-info, see `_apply_weight`
    """
    local = transform_to_local(x[:3], x[3:5])
    bearing = jnp.arctan2(local[1], local[0])
    rng = jnp.sqrt(local[0] * local[0] + local[1] * local[1])
    r = jnp.stack([wrap_angle(bearing - params["bearing"]), rng - params["range"]])
    return _apply_weight(r, params)
