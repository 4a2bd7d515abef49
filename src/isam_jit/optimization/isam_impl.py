# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Building blocks of the incremental update in `isam_jit.optimization.isam`.

add_variables
    Extend the linearization point, the ordering and the parallel delta
    containers with new variables (trailing indices, zero deltas).

threshold_exceeded, check_relinearization_full, check_relinearization_partial
    Decide which variables have drifted far enough from their
    linearization point to be relinearized. The partial check walks the
    Bayes tree top-down and does not descend below a clique none of whose
    frontals exceed the threshold.

compute_reordering
    Constrained minimum-degree order over the affected variables and the
    inverse permutation that moves them, in that order, behind every
    unaffected variable.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import numpy as np

from isam_jit.core.ordering import Ordering, Permutation
from isam_jit.core.types import Key
from isam_jit.core.values import Values
from isam_jit.inference.bayes_tree import BayesTree
from isam_jit.linear.ordering_heuristics import constrained_min_degree
from isam_jit.linear.vector_values import Permuted

Threshold = Union[float, Mapping[str, Union[float, Sequence[float]]]]


def add_variables(
    new_theta: Values,
    theta: Values,
    ordering: Ordering,
    deltas: Iterable[Permuted] = (),
) -> List[Key]:
    """Append every variable of ``new_theta``; returns the new keys in order."""
    deltas = list(deltas)
    added = []
    for key, value in new_theta.items():
        theta.insert(key, value, new_theta.var_type(key))
        ordering.push_back(key)
        for d in deltas:
            d.push_back(np.zeros(new_theta.dim(key)))
        added.append(key)
    return added


def threshold_exceeded(delta: np.ndarray, var_type: str, threshold: Threshold) -> bool:
    """
    True if ``delta`` exceeds the relinearization threshold of its type.

    A scalar threshold is compared against the infinity norm; a vector
    threshold is compared component-wise.
    """
    if isinstance(threshold, Mapping):
        if var_type not in threshold:
            raise ValueError(f"No relinearization threshold for variable type '{var_type}'")
        t = np.asarray(threshold[var_type], dtype=np.float64)
    else:
        t = np.asarray(threshold, dtype=np.float64)
    if t.ndim == 0:
        return bool(np.max(np.abs(delta), initial=0.0) > t)
    if t.shape != delta.shape:
        raise ValueError(
            f"Threshold for '{var_type}' has {t.shape[0]} components, variable has {delta.shape[0]}"
        )
    return bool(np.any(np.abs(delta) > t))


def check_relinearization_full(
    delta: Permuted,
    ordering: Ordering,
    theta: Values,
    threshold: Threshold,
) -> Set[Key]:
    relin = set()
    for key in ordering:
        if threshold_exceeded(delta[ordering[key]], theta.var_type(key), threshold):
            relin.add(key)
    return relin


def check_relinearization_partial(
    tree: BayesTree,
    delta: Permuted,
    ordering: Ordering,
    theta: Values,
    threshold: Threshold,
) -> Set[Key]:
    relin = set()
    stack = tree.roots
    while stack:
        clique = tree[stack.pop()]
        hit = False
        for index in clique.frontals:
            key = ordering.key(index)
            if threshold_exceeded(delta[index], theta.var_type(key), threshold):
                relin.add(key)
                hit = True
        if hit:
            stack.extend(clique.children)
    return relin


def compute_reordering(
    ordering: Ordering,
    affected: Set[Key],
    factor_keys: Iterable[Iterable[Key]],
    groups: Optional[Mapping[Key, int]] = None,
) -> Tuple[List[Key], Permutation]:
    """
    Elimination order of the affected keys and the inverse permutation
    (``inverse[old_index] == new_index``) that places unaffected keys first,
    in their current relative order, followed by the affected keys in
    elimination order.
    """
    candidates = [k for k in ordering if k in affected]
    order = constrained_min_degree(candidates, factor_keys, groups, rank=ordering.__getitem__)
    unaffected = [k for k in ordering if k not in affected]
    inverse = [0] * len(ordering)
    for new_index, key in enumerate(unaffected + order):
        inverse[ordering[key]] = new_index
    return order, Permutation(inverse)


def constraint_groups(
    affected: Set[Key],
    constrained_keys: Optional[Mapping[Key, int]],
    new_factor_keys: Set[Key],
    n_variables: int,
) -> Dict[Key, int]:
    """
    Groups for the constrained ordering. Explicit constraints win; otherwise
    variables touched by the new factors are eliminated last, unless they
    are every variable in the system.
    """
    if constrained_keys is not None:
        return {k: int(g) for k, g in constrained_keys.items() if k in affected}
    if len(new_factor_keys) < n_variables:
        return {k: 1 for k in new_factor_keys if k in affected}
    return {}
