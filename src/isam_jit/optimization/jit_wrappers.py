# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
JIT-compiled linearization of residual functions.

Every nonlinear factor in ISAM-JIT is a JAX residual ``r(x_stacked, params)``
over the stacked values of its variables. The smoother needs, for each
factor, the residual and its Jacobian with respect to the *local update* of
every variable, i.e. the derivative of

    delta ↦ r( retract(x_1, delta_1), ..., retract(x_k, delta_k) )

at ``delta = 0``. This module builds that function once per distinct
``(residual_fn, variable types, dimensions)`` signature, compiles it with
`jax.jit`, and caches it so that relinearizing thousands of factors of the
same kind reuses one executable.

Key Utilities
-------------
JittedLinearizer
    Holds the compiled ``(x, params) -> (r, J)`` function for one factor
    signature. Built with `JittedLinearizer.from_residual`.

get_linearizer(residual_fn, var_types, dims)
    Cached constructor of `JittedLinearizer`.

jitted_residual(residual_fn)
    Cached ``jax.jit(residual_fn)`` used to evaluate nonlinear errors.

Notes
-----
Residual functions must be pure and JAX-traceable, and ``params`` must be a
pytree of numeric leaves (floats, numpy or JAX arrays). Anything else should
be closed over by the residual function instead.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Callable, Dict, Sequence, Tuple

import numpy as np

from isam_jit.core.jax_init import jax, jnp
from isam_jit.slam.manifold import retract

ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]


@dataclass
class JittedLinearizer:
    """
    Compiled linearization for one factor signature.

    Usage:
        lin = JittedLinearizer.from_residual(residual_fn, ("pose2", "pose2"), (3, 3))
        r, J = lin(x_stacked, params)
    """
    fn: Callable[[jnp.ndarray, Dict[str, Any]], Tuple[jnp.ndarray, jnp.ndarray]]
    var_types: Tuple[str, ...]
    dims: Tuple[int, ...]

    def __call__(self, x: np.ndarray, params: Dict[str, Any]) -> Tuple[np.ndarray, np.ndarray]:
        r, J = self.fn(jnp.asarray(x), params)
        return np.asarray(r, dtype=np.float64).reshape(-1), np.asarray(J, dtype=np.float64)

    @staticmethod
    def from_residual(
        residual_fn: ResidualFn,
        var_types: Sequence[str],
        dims: Sequence[int],
    ) -> "JittedLinearizer":
        var_types = tuple(var_types)
        dims = tuple(int(d) for d in dims)
        bounds = np.cumsum((0,) + dims)

        def local_residual(delta: jnp.ndarray, x: jnp.ndarray, params) -> jnp.ndarray:
            blocks = [
                retract(t, x[bounds[i]:bounds[i + 1]], delta[bounds[i]:bounds[i + 1]])
                for i, t in enumerate(var_types)
            ]
            return jnp.reshape(residual_fn(jnp.concatenate(blocks), params), (-1,))

        def linearize(x: jnp.ndarray, params):
            r = jnp.reshape(residual_fn(x, params), (-1,))
            J = jax.jacfwd(local_residual)(jnp.zeros_like(x), x, params)
            return r, J

        return JittedLinearizer(fn=jax.jit(linearize), var_types=var_types, dims=dims)


@functools.lru_cache(maxsize=None)
def get_linearizer(residual_fn: ResidualFn, var_types: Tuple[str, ...], dims: Tuple[int, ...]) -> JittedLinearizer:
    return JittedLinearizer.from_residual(residual_fn, var_types, dims)


@functools.lru_cache(maxsize=None)
def jitted_residual(residual_fn: ResidualFn):
    return jax.jit(residual_fn)
