"""
SE(2) and SO(2) operations for ISAM-JIT.

This module implements the planar Lie-group mathematics required by the
planar SLAM measurement models:

    • SO(2) rotation matrices and angle wrapping
    • SE(2) exponential & logarithm maps
    • Composition, inversion and relative poses
    • Small-angle series for numerically stable Jacobians

Poses are 3-vectors ``[x, y, theta]``; tangent vectors are
``[v_x, v_y, omega]``.

All functions are written in JAX and support:
    - JIT compilation
    - Automatic differentiation (``jax.jacfwd`` is used to linearize factors)
    - Numerically stable behavior near zero rotation

Key Functions
-------------
se2_exp(xi)
    Maps a twist to a pose.

se2_log(p)
    Inverse of se2_exp.

se2_compose(a, b), se2_inverse(a), relative_pose_se2(a, b)
    Group operations on pose vectors.

se2_retract(p, delta)
    Right-multiplicative update ``p ∘ Exp(delta)`` used by the manifold layer.
"""

from __future__ import annotations

from isam_jit.core.jax_init import jnp

_SMALL_ANGLE = 1e-6


def wrap_angle(a: jnp.ndarray) -> jnp.ndarray:
    """Wrap an angle to (-pi, pi]."""
    return jnp.arctan2(jnp.sin(a), jnp.cos(a))


def so2_matrix(theta: jnp.ndarray) -> jnp.ndarray:
    """Rotation matrix for a planar angle."""
    c = jnp.cos(theta)
    s = jnp.sin(theta)
    return jnp.array([[c, -s], [s, c]])


def _exp_coefficients(w: jnp.ndarray):
    """
    Coefficients of the SE(2) left Jacobian:
        a = sin(w) / w
        b = (1 - cos(w)) / w
    with series expansions near w = 0.
    """
    small = jnp.abs(w) < _SMALL_ANGLE
    w_safe = jnp.where(small, 1.0, w)
    a = jnp.where(small, 1.0 - w * w / 6.0, jnp.sin(w_safe) / w_safe)
    b = jnp.where(small, 0.5 * w, (1.0 - jnp.cos(w_safe)) / w_safe)
    return a, b


def se2_exp(xi: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from se(2) -> SE(2).

    xi = [v_x, v_y, omega]

        t = V(omega) v,   V = [[a, -b], [b, a]]
    """
    xi = jnp.asarray(xi)
    vx, vy, w = xi[0], xi[1], xi[2]
    a, b = _exp_coefficients(w)
    x = a * vx - b * vy
    y = b * vx + a * vy
    return jnp.stack([x, y, wrap_angle(w)])


def se2_log(p: jnp.ndarray) -> jnp.ndarray:
    """Logarithm map SE(2) -> se(2), inverse of :func:`se2_exp`."""
    p = jnp.asarray(p)
    x, y, th = p[0], p[1], wrap_angle(p[2])
    a, b = _exp_coefficients(th)
    det = a * a + b * b
    vx = (a * x + b * y) / det
    vy = (-b * x + a * y) / det
    return jnp.stack([vx, vy, th])


def se2_compose(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Compose two poses: a ∘ b."""
    c = jnp.cos(a[2])
    s = jnp.sin(a[2])
    x = a[0] + c * b[0] - s * b[1]
    y = a[1] + s * b[0] + c * b[1]
    return jnp.stack([x, y, wrap_angle(a[2] + b[2])])


def se2_inverse(a: jnp.ndarray) -> jnp.ndarray:
    c = jnp.cos(a[2])
    s = jnp.sin(a[2])
    x = -(c * a[0] + s * a[1])
    y = -(-s * a[0] + c * a[1])
    return jnp.stack([x, y, wrap_angle(-a[2])])


def relative_pose_se2(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """Relative pose from a to b: a⁻¹ ∘ b."""
    return se2_compose(se2_inverse(a), b)


def se2_retract(p: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Right-multiplicative retraction: p ∘ Exp(delta)."""
    return se2_compose(jnp.asarray(p), se2_exp(delta))


def transform_to_local(p: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Express a world point in the frame of pose p."""
    d = point - p[:2]
    c = jnp.cos(p[2])
    s = jnp.sin(p[2])
    return jnp.stack([c * d[0] + s * d[1], -s * d[0] + c * d[1]])
