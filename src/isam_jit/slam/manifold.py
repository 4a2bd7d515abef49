# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Manifold update rules for the variable types known to ISAM-JIT.

The smoother treats every variable as an opaque vector of fixed dimension.
The only geometric operation it needs is *retraction*: applying a local
update vector ``delta`` (an element of the tangent space) to a value.
This module owns that mapping:

    • `TYPE_TO_MANIFOLD`      (var_type → manifold label)
    • `get_manifold_for_var_type`
    • `retract(var_type, x, delta)`
    • `register_manifold`     (plug in a new variable type)

Integration with the Smoother
-----------------------------
The retraction is used in two places:

    1. Linearization: factors are differentiated w.r.t. ``delta`` at zero
       through ``retract``, so Jacobians live in the tangent space.
    2. Folding: when a variable is relinearized, or an estimate is
       requested, its accumulated delta is applied with ``retract``.

Both paths go through the same function, so the incremental estimate and a
batch solve over the same linearization point agree exactly.

Notes
-----
Local update vectors are assumed to have the same length as the stored value
(minimal parameterizations: ``[x, y, theta]`` poses, ``[x, y]`` points).
"""

from __future__ import annotations

from typing import Callable, Dict

from isam_jit.core.jax_init import jnp
from isam_jit.core.math2d import se2_retract

RetractFn = Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]


def _euclidean_retract(x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    return x + delta


TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose2": "se2",
    "point2": "euclidean",
    "euclidean": "euclidean",
}

MANIFOLD_RETRACTIONS: Dict[str, RetractFn] = {
    "se2": se2_retract,
    "euclidean": _euclidean_retract,
}


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def register_manifold(var_type: str, manifold: str, retract_fn: RetractFn = None) -> None:
    """
    Map a variable type to a manifold, optionally registering the manifold's
    retraction. Retractions must be written in JAX so factors can be
    differentiated through them.
    """
    if retract_fn is not None:
        MANIFOLD_RETRACTIONS[manifold] = retract_fn
    if manifold not in MANIFOLD_RETRACTIONS:
        raise ValueError(f"No retraction registered for manifold '{manifold}'")
    TYPE_TO_MANIFOLD[var_type] = manifold


def retract(var_type: str, x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """Apply a local update ``delta`` to a value of the given variable type."""
    manifold = get_manifold_for_var_type(var_type)
    return MANIFOLD_RETRACTIONS[manifold](x, delta)
