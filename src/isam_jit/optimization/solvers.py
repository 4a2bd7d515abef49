# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Nonlinear step solvers for ISAM-JIT.

The incremental smoother computes a Gauss-Newton step by back-substitution in
its Bayes tree. What it does with that step is decided by the optimization
parameters it was configured with:

Key Concepts
------------
GaussNewtonParams
    The Gauss-Newton step is accepted as is.
    - wildfire_threshold: back-substitution stops descending the tree below
      cliques whose separator values moved by less than this.

DoglegParams
    Powell's dogleg trust region on top of the cached tree:
    - initial_delta: initial trust-region radius
    - wildfire_threshold: as above
    - adaptation_mode: how the radius is searched within one update

dogleg_point(dx_u, dx_n, radius)
    Point on the dogleg path (steepest descent point, then towards the
    Gauss-Newton point) at the given radius.

dogleg_iterate(...)
    One trust-region iteration: Cauchy point from the cached gradient and
    ``R g``, blend with the Gauss-Newton point, gain ratio between the
    actual nonlinear error reduction and the model reduction, radius update.

Batch reference solvers
-----------------------
batch_delta(graph, values, ordering, method)
    Linearize the whole graph and solve one Gauss-Newton step from scratch.

gauss_newton(graph, values, cfg)
    Iterate `batch_delta` to convergence. Used as the reference the
    incremental solution is checked against.

Notes
-----
The step solvers never touch the Bayes tree structure; they only read the
cached conditionals, so a rejected dogleg step leaves the smoother's tree
untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence

import numpy as np

from isam_jit.core.factor_graph import FactorGraph
from isam_jit.core.ordering import Ordering
from isam_jit.core.types import Key
from isam_jit.core.values import Values
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.linear.elimination import METHODS, eliminate

logger = logging.getLogger("isam_jit.solvers")

ADAPTATION_MODES = ("search_each_iteration", "search_reduce_only", "one_step_per_iteration")

# Smallest trust-region radius before a step is abandoned.
_MIN_DELTA = 1e-5


@dataclass
class GaussNewtonParams:
    wildfire_threshold: float = 0.001

    def __post_init__(self) -> None:
        if self.wildfire_threshold < 0.0:
            raise ValueError("wildfire_threshold must be non-negative")


@dataclass
class DoglegParams:
    initial_delta: float = 1.0
    wildfire_threshold: float = 1e-5
    adaptation_mode: str = "search_each_iteration"

    def __post_init__(self) -> None:
        if self.initial_delta <= 0.0:
            raise ValueError("initial_delta must be positive")
        if self.wildfire_threshold < 0.0:
            raise ValueError("wildfire_threshold must be non-negative")
        if self.adaptation_mode not in ADAPTATION_MODES:
            raise ValueError(
                f"Unknown adaptation_mode '{self.adaptation_mode}', expected one of {ADAPTATION_MODES}"
            )


@dataclass
class GNConfig:
    max_iters: int = 20
    tolerance: float = 1e-9     # stop once the largest update component is below this
    factorization: str = "cholesky"


# --- Dogleg ---


def dogleg_point(dx_u: np.ndarray, dx_n: np.ndarray, radius: float) -> np.ndarray:
    """
    Dogleg point for trust region ``radius``.

    Returns the Gauss-Newton point if it is inside the region, the
    steepest-descent point scaled to the boundary if that one is outside,
    and otherwise the point where the segment from ``dx_u`` to ``dx_n``
    crosses the boundary.
    """
    norm_n = float(np.linalg.norm(dx_n))
    if norm_n <= radius:
        return dx_n
    norm_u = float(np.linalg.norm(dx_u))
    if norm_u >= radius:
        return (radius / norm_u) * dx_u

    # Solve ||dx_u + tau (dx_n - dx_u)|| = radius for tau in [0, 1].
    b = dx_n - dx_u
    qa = float(b @ b)
    qb = 2.0 * float(dx_u @ b)
    qc = float(dx_u @ dx_u) - radius * radius
    tau = (-qb + np.sqrt(max(qb * qb - 4.0 * qa * qc, 0.0))) / (2.0 * qa)
    return dx_u + tau * b


@dataclass
class DoglegIterationResult:
    delta: float                  # updated trust-region radius
    dx_d: Dict[int, np.ndarray]   # accepted step, per variable index
    f_error: float                # nonlinear error after the step


def _stack(x: Mapping[int, np.ndarray], indices: Sequence[int]) -> np.ndarray:
    if not indices:
        return np.zeros(0)
    return np.concatenate([np.asarray(x[i], dtype=np.float64) for i in indices])


def _unstack(v: np.ndarray, indices: Sequence[int], dims: Mapping[int, int]) -> Dict[int, np.ndarray]:
    out = {}
    start = 0
    for i in indices:
        out[i] = v[start:start + dims[i]]
        start += dims[i]
    return out


def steepest_descent_point(
    tree: BayesTree,
    grad: Mapping[int, np.ndarray],
    rg: Optional[Mapping[int, np.ndarray]] = None,
) -> Dict[int, np.ndarray]:
    """Minimizer of the quadratic model along the negative gradient."""
    if rg is None:
        rg = tree.rg_product(grad)
    gg = sum(float(g @ g) for g in grad.values())
    rgrg = sum(float(v @ v) for v in rg.values())
    if gg == 0.0 or rgrg == 0.0:
        return {i: np.zeros_like(g) for i, g in grad.items()}
    step = -gg / rgrg
    return {i: step * g for i, g in grad.items()}


def dogleg_iterate(
    delta: float,
    mode: str,
    tree: BayesTree,
    grad: Mapping[int, np.ndarray],
    dx_n: Mapping[int, np.ndarray],
    f: Callable[[Mapping[int, np.ndarray]], float],
    f_error: float,
    rg: Optional[Mapping[int, np.ndarray]] = None,
) -> DoglegIterationResult:
    """
    One dogleg trust-region iteration.

    Args:
        delta: current radius.
        mode: one of ``ADAPTATION_MODES``.
        tree: Bayes tree the Gauss-Newton point was solved from.
        grad: gradient of the linearized error at zero, per index.
        dx_n: Gauss-Newton point, per index.
        f: nonlinear error after applying a step given per index.
        f_error: nonlinear error at the current estimate.
        rg: ``R g`` per index, computed from ``tree`` if not given.
    """
    dims = tree.dims()
    indices = sorted(dims)
    dx_u = _stack(steepest_descent_point(tree, grad, rg), indices)
    dx_gn = _stack(dx_n, indices)

    last_action = None
    while True:
        dx_d = dogleg_point(dx_u, dx_gn, delta)
        dx_norm = float(np.linalg.norm(dx_d))
        if dx_norm == 0.0:
            step = _unstack(dx_d, indices, dims)
            return DoglegIterationResult(delta, step, f_error)

        step = _unstack(dx_d, indices, dims)
        new_error = f(step)
        model = tree.model_reduction(step)
        rho = (f_error - new_error) / model if model > 0.0 else -1.0
        logger.debug("dogleg: delta=%.6g |dx|=%.6g rho=%.4f", delta, dx_norm, rho)

        stay = False
        if rho >= 0.75:
            on_boundary = dx_norm >= delta * (1.0 - 1e-9)
            new_delta = max(delta, 3.0 * dx_norm) if on_boundary else delta
            if mode == "search_each_iteration" and new_delta != delta and last_action != "decreased":
                stay = True
                last_action = "increased"
            delta = new_delta
        elif rho >= 0.25:
            pass
        elif rho > 0.0:
            hit_minimum = delta <= _MIN_DELTA
            if not hit_minimum:
                delta *= 0.5
            if not (mode == "one_step_per_iteration" or last_action == "increased" or hit_minimum):
                stay = True
                last_action = "decreased"
        else:
            # Error did not decrease: reject and shrink until the radius bottoms out.
            if delta > _MIN_DELTA:
                delta *= 0.5
                last_action = "decreased"
                continue
            logger.debug("dogleg: radius below %.0e, returning a zero step", _MIN_DELTA)
            zero = {i: np.zeros(dims[i]) for i in indices}
            return DoglegIterationResult(delta, zero, f_error)

        if not stay:
            return DoglegIterationResult(delta, step, new_error)


# --- Batch reference ---


def batch_delta(
    graph: FactorGraph,
    values: Values,
    ordering: Optional[Ordering] = None,
    method: str = "cholesky",
) -> Dict[Key, np.ndarray]:
    """One Gauss-Newton step for the whole graph, solved from scratch."""
    if ordering is None:
        ordering = Ordering(values.keys())
    factors = graph.linearize(values, ordering)
    dims = {ordering[k]: values.dim(k) for k in ordering}
    tree = eliminate(factors, list(range(len(ordering))), dims, method, index_to_key=ordering.key)
    solution = tree.optimize()
    return {ordering.key(i): v for i, v in solution.items()}


def gauss_newton(graph: FactorGraph, values: Values, cfg: Optional[GNConfig] = None) -> Values:
    """
    Batch Gauss-Newton on the nonlinear factor graph.

    Each iteration linearizes every factor at the current estimate, eliminates
    the full system and retracts the variables by the solution.
    """
    cfg = cfg or GNConfig()
    if cfg.factorization not in METHODS:
        raise ValueError(f"Unknown factorization '{cfg.factorization}'")
    ordering = Ordering(values.keys())
    x = values
    for it in range(cfg.max_iters):
        delta = batch_delta(graph, x, ordering, cfg.factorization)
        x = x.retract(delta)
        step = max((float(np.max(np.abs(d))) for d in delta.values()), default=0.0)
        logger.debug("gauss_newton: iteration %d, max |delta| = %.3e", it, step)
        if step < cfg.tolerance:
            break
    return x
