# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Incremental smoothing and mapping on a Bayes tree (ISAM2).

`ISAM2` keeps a nonlinear factor graph, a linearization point ``theta`` and
a Bayes tree holding the square-root information of the problem linearized
at ``theta``. Each call to `ISAM2.update` adds (and optionally removes)
factors and variables and brings the tree up to date by re-eliminating only
the part of it that changed:

    1. validate the inputs and register new variables;
    2. seed the affected set with the variables of new and removed factors
       and the new variables;
    3. on the configured cadence, pick variables whose delta exceeds the
       relinearization threshold, fold their delta into ``theta`` and add
       them, together with every variable sharing a factor with them, to
       the seed;
    4. mark the cliques holding seed variables and all their ancestors as
       affected; their frontals are the affected variables;
    5. relinearize every factor lying entirely inside the affected set and
       collect the cached separator marginals of the orphaned subtrees;
    6. order the affected variables with a constrained minimum-degree
       heuristic, move them behind all other variables and relabel the
       rest of the system accordingly;
    7. eliminate the affected system into a new tree fragment and splice
       fragment and orphans back together;
    8. update the Gauss-Newton delta by wildfire back-substitution from the
       new fragment, then let the step strategy (Gauss-Newton or dogleg)
       set the accepted delta.

Steps 1-7 up to elimination run on copies (the "plan"). Only once
elimination succeeded is anything in the smoother replaced, so an update
that raises leaves the smoother exactly as it was.

Example
-------
    params = ISAM2Params(optimization_params=GaussNewtonParams())
    isam = ISAM2(params)
    graph = PlanarGraph()
    graph.add_pose_prior(0, [0, 0, 0], sigmas=[0.3, 0.3, 0.1])
    values = Values()
    values.insert(0, [0.1, -0.1, 0.05], POSE2)
    isam.update(graph, values)
    estimate = isam.calculate_estimate()
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Union

import numpy as np

from isam_jit.core.exceptions import LinearizationError
from isam_jit.core.factor_graph import Factor, FactorGraph
from isam_jit.core.ordering import Ordering, Permutation
from isam_jit.core.types import FactorIndex, Key
from isam_jit.core.values import Values
from isam_jit.inference.bayes_tree import BayesTree, Clique, TopRemoval
from isam_jit.linear.elimination import METHODS, eliminate
from isam_jit.linear.vector_values import Permuted
from isam_jit.optimization.isam_impl import (
    Threshold,
    add_variables,
    check_relinearization_full,
    check_relinearization_partial,
    compute_reordering,
    constraint_groups,
)
from isam_jit.optimization.solvers import DoglegParams, GaussNewtonParams, dogleg_iterate

logger = logging.getLogger("isam_jit.isam")


@dataclass
class ISAM2Params:
    optimization_params: Union[GaussNewtonParams, DoglegParams] = field(default_factory=GaussNewtonParams)
    relinearize_threshold: Threshold = 0.1
    relinearize_skip: int = 10
    enable_relinearization: bool = True
    evaluate_nonlinear_error: bool = False
    factorization: str = "cholesky"
    enable_partial_relinearization_check: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.optimization_params, (GaussNewtonParams, DoglegParams)):
            raise ValueError("optimization_params must be GaussNewtonParams or DoglegParams")
        if self.factorization not in METHODS:
            raise ValueError(f"Unknown factorization '{self.factorization}', expected one of {METHODS}")
        if self.relinearize_skip < 0:
            raise ValueError("relinearize_skip must be non-negative")
        thresholds = (
            self.relinearize_threshold.values()
            if isinstance(self.relinearize_threshold, Mapping)
            else [self.relinearize_threshold]
        )
        for t in thresholds:
            if np.any(np.asarray(t, dtype=np.float64) < 0.0):
                raise ValueError("relinearize_threshold must be non-negative")


@dataclass
class ISAM2Result:
    variables_relinearized: int = 0
    variables_reeliminated: int = 0
    cliques_recalculated: int = 0
    new_factor_indices: List[FactorIndex] = field(default_factory=list)
    error_before: Optional[float] = None
    error_after: Optional[float] = None


@dataclass
class _UpdatePlan:
    """Everything an update computes before the smoother is modified."""
    new_factors: List[Factor]
    remove_slots: List[int]
    theta: Values
    ordering: Ordering
    deltas: List[Permuted]
    relinearized: Set[Key]
    affected_handles: Set[int]
    affected_keys: Set[Key]
    inverse: Permutation
    fragment: BayesTree
    error_before: Optional[float]


class ISAM2:
    """Incremental nonlinear smoother maintained on a Bayes tree."""

    def __init__(self, params: Optional[ISAM2Params] = None) -> None:
        self.params = params or ISAM2Params()
        self._graph = FactorGraph()
        self._theta = Values()
        self._ordering = Ordering()
        self._tree = BayesTree()
        self._delta = Permuted.empty()
        self._delta_newton = Permuted.empty()
        self._rg_prod = Permuted.empty()
        opt = self.params.optimization_params
        self._delta_radius = opt.initial_delta if isinstance(opt, DoglegParams) else 0.0
        self._update_count = 0

    # --- Update ---

    def update(
        self,
        new_factors: Iterable[Factor] = (),
        new_theta: Optional[Values] = None,
        remove_factor_indices: Iterable[int] = (),
        constrained_keys: Optional[Mapping[Key, int]] = None,
        force_relinearize: bool = False,
    ) -> ISAM2Result:
        """
        Add factors and variables, remove factors, and bring the estimate
        up to date.

        Args:
            new_factors: nonlinear factors to add (a `FactorGraph` or any
                iterable of `Factor`).
            new_theta: initial values of the variables first referenced by
                ``new_factors``.
            remove_factor_indices: slots of factors to remove, as returned in
                earlier results' ``new_factor_indices``.
            constrained_keys: optional ``Key -> group``; higher groups are
                eliminated later. Only affected variables are reordered.
            force_relinearize: run the relinearization check regardless of
                ``relinearize_skip``.

        Raises:
            ValueError: a variable in ``new_theta`` already exists.
            LinearizationError: a factor references an unknown variable.
            InvalidRemovalError: a removal slot is invalid.
            IndeterminateSystemError: the affected system is singular.
        """
        plan = self._plan(
            list(new_factors),
            new_theta if new_theta is not None else Values(),
            list(remove_factor_indices),
            constrained_keys,
            force_relinearize,
        )
        return self._commit(plan)

    def _plan(
        self,
        new_factors: List[Factor],
        new_theta: Values,
        remove_slots: List[int],
        constrained_keys: Optional[Mapping[Key, int]],
        force_relinearize: bool,
    ) -> _UpdatePlan:
        params = self.params

        # 1. Validate.
        self._graph.check_removable(remove_slots)
        for key in new_theta:
            if key in self._theta:
                raise ValueError(f"Variable {key} already exists in the smoother")
        for factor in new_factors:
            for key in factor.keys:
                if key not in self._theta and key not in new_theta:
                    raise LinearizationError(key, factor.type)

        removing = set(remove_slots)
        removed_factors = [self._graph[s] for s in remove_slots]

        error_before = None
        if params.evaluate_nonlinear_error:
            estimate = self.calculate_estimate()
            estimate.insert_values(new_theta)
            error_before = self._error_after_update(estimate, new_factors, removing)

        theta = self._theta.copy()
        ordering = self._ordering.copy()
        deltas = [self._delta.copy(), self._delta_newton.copy(), self._rg_prod.copy()]
        new_keys = add_variables(new_theta, theta, ordering, deltas)

        # 2. Seed.
        new_factor_keys = {k for f in new_factors for k in f.keys}
        seed: Set[Key] = set(new_keys) | new_factor_keys
        for factor in removed_factors:
            seed.update(factor.keys)

        # 3. Relinearization.
        relinearized: Set[Key] = set()
        if params.enable_relinearization and (force_relinearize or self._relinearization_due()):
            if params.enable_partial_relinearization_check:
                relinearized = check_relinearization_partial(
                    self._tree, self._delta, self._ordering, self._theta, params.relinearize_threshold
                )
            else:
                relinearized = check_relinearization_full(
                    self._delta, self._ordering, self._theta, params.relinearize_threshold
                )
            for key in relinearized:
                theta.update(key, theta.retract_key(key, self._delta[self._ordering[key]]))
            for slot in self._graph.factors_touching(relinearized):
                if slot not in removing:
                    seed.update(self._graph[slot].keys)
            seed |= relinearized
            if relinearized:
                logger.debug("Relinearizing %d variables", len(relinearized))

        # 4. Affected cliques and variables.
        seed_indices = [self._ordering[k] for k in seed if k in self._ordering]
        affected_handles = self._tree.find_affected(seed_indices)
        removal: TopRemoval = self._tree.collect_top(affected_handles)
        affected_keys = {self._ordering.key(i) for i in removal.removed_indices} | set(new_keys)

        # 5. Factors to re-eliminate.
        to_linearize: List[Factor] = [
            self._graph[slot]
            for slot in self._graph.factors_touching(affected_keys)
            if slot not in removing and all(k in affected_keys for k in self._graph[slot].keys)
        ]
        to_linearize.extend(new_factors)

        # 6. Reordering.
        structure = [f.keys for f in to_linearize]
        structure.extend(
            [self._ordering.key(i) for i in bf.keys] for bf in removal.boundary_factors
        )
        groups = constraint_groups(affected_keys, constrained_keys, new_factor_keys, len(theta))
        order, inverse = compute_reordering(ordering, affected_keys, structure, groups)
        ordering.permute_with_inverse(inverse)

        # 7. Relinearize and eliminate.
        linear = [f.linearize(theta, ordering) for f in to_linearize]
        linear.extend(bf.permuted(inverse) for bf in removal.boundary_factors)
        dims = {ordering[k]: theta.dim(k) for k in affected_keys}
        fragment = eliminate(
            linear,
            [ordering[k] for k in order],
            dims,
            params.factorization,
            index_to_key=ordering.key,
        )

        return _UpdatePlan(
            new_factors=new_factors,
            remove_slots=remove_slots,
            theta=theta,
            ordering=ordering,
            deltas=deltas,
            relinearized=relinearized,
            affected_handles=affected_handles,
            affected_keys=affected_keys,
            inverse=inverse,
            fragment=fragment,
            error_before=error_before,
        )

    def _commit(self, plan: _UpdatePlan) -> ISAM2Result:
        for slot in plan.remove_slots:
            self._graph.remove(slot)
        new_slots = [self._graph.push_back(f) for f in plan.new_factors]

        self._theta = plan.theta
        self._ordering = plan.ordering
        for d in plan.deltas:
            d.permute_with_inverse(plan.inverse)
            for key in plan.relinearized:
                index = self._ordering[key]
                d[index] = np.zeros_like(d[index])
        self._delta, self._delta_newton, self._rg_prod = plan.deltas

        removal = self._tree.remove_top(plan.affected_handles)
        self._tree.permute_with_inverse(plan.inverse)
        adopted = self._tree.splice(plan.fragment, removal.orphans)

        opt = self.params.optimization_params
        recalculated = self._tree.optimize_wildfire(self._delta_newton, set(adopted), opt.wildfire_threshold)
        if isinstance(opt, DoglegParams):
            self._dogleg_step(opt)
        else:
            for i in range(len(self._delta)):
                self._delta[i] = self._delta_newton[i]

        self._update_count += 1

        result = ISAM2Result(
            variables_relinearized=len(plan.relinearized),
            variables_reeliminated=len(plan.affected_keys),
            cliques_recalculated=recalculated,
            new_factor_indices=new_slots,
            error_before=plan.error_before,
        )
        if self.params.evaluate_nonlinear_error:
            result.error_after = self._graph.error(self.calculate_estimate())
        logger.debug(
            "update %d: %d new factors, %d removed, %d relinearized, %d re-eliminated, %d cliques recalculated",
            self._update_count,
            len(new_slots),
            len(plan.remove_slots),
            result.variables_relinearized,
            result.variables_reeliminated,
            result.cliques_recalculated,
        )
        return result

    def _relinearization_due(self) -> bool:
        skip = self.params.relinearize_skip
        return skip <= 1 or (self._update_count + 1) % skip == 0

    def _error_after_update(self, values: Values, new_factors: List[Factor], removing: Set[int]) -> float:
        total = sum(f.error(values) for slot, f in self._graph.live() if slot not in removing)
        return total + sum(f.error(values) for f in new_factors)

    def _dogleg_step(self, opt: DoglegParams) -> None:
        grad = self._tree.gradient_at_zero()
        rg = self._tree.rg_product(grad)
        for index, value in rg.items():
            self._rg_prod[index] = value

        def error_at(step: Mapping[int, np.ndarray]) -> float:
            return self._graph.error(self._theta.retract({self._ordering.key(i): v for i, v in step.items()}))

        result = dogleg_iterate(
            self._delta_radius,
            opt.adaptation_mode,
            self._tree,
            grad,
            self._delta_newton.as_dict(),
            error_at,
            self._graph.error(self._theta),
            rg,
        )
        logger.debug("dogleg radius %.6g -> %.6g", self._delta_radius, result.delta)
        self._delta_radius = result.delta
        for index, value in result.dx_d.items():
            self._delta[index] = value

    # --- Queries ---

    def calculate_estimate(self, key: Optional[Key] = None):
        """Current estimate ``theta ⊕ delta`` of one variable, or of all of them as `Values`."""
        if key is not None:
            return self._theta.retract_key(key, self._delta[self._ordering[key]])
        return self._theta.retract({k: self._delta[self._ordering[k]] for k in self._ordering})

    def calculate_best_estimate(self) -> Values:
        """Estimate from a full back-substitution instead of the wildfire delta."""
        solution = self._tree.optimize()
        return self._theta.retract({self._ordering.key(i): v for i, v in solution.items()})

    def get_delta(self) -> Dict[Key, np.ndarray]:
        return {k: self._delta[self._ordering[k]].copy() for k in self._ordering}

    def get_ordering(self) -> Ordering:
        return self._ordering.copy()

    def get_linearization_point(self) -> Values:
        return self._theta.copy()

    def get_factors_unsafe(self) -> FactorGraph:
        """The smoother's own factor graph; modifying it corrupts the smoother."""
        return self._graph

    def get_bayes_tree(self) -> BayesTree:
        return self._tree

    def nodes(self) -> List[Clique]:
        return self._tree.nodes()

    def gradient_at_zero(self) -> Dict[Key, np.ndarray]:
        """Gradient of the linearized error at ``delta = 0``, from the cached clique contributions."""
        return {self._ordering.key(i): g for i, g in self._tree.gradient_at_zero().items()}

    @property
    def update_count(self) -> int:
        return self._update_count

    def clone(self) -> "ISAM2":
        """Independent deep copy; nonlinear factors are shared since they are immutable."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return (
            f"ISAM2(variables={len(self._ordering)}, factors={self._graph.size()}, "
            f"cliques={len(self._tree)}, updates={self._update_count})"
        )
