# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Multifrontal elimination of a linear Gaussian factor graph into a Bayes tree.

`eliminate` runs in two passes:

Symbolic pass
    Every factor is placed in the bucket of its earliest variable in the
    elimination order. Eliminating a variable joins the key sets in its
    bucket; the union minus the variable is its *separator*, which is pushed
    into the bucket of the separator's earliest variable. Cliques are then
    assembled from the last variable backwards: a variable whose separator
    equals the full key set of its parent clique is merged into that clique
    as an extra frontal, otherwise it opens a new child clique.

Numeric pass
    Cliques are eliminated bottom-up. A clique gathers the factors from the
    buckets of its frontals plus the separator marginals of its children and
    produces a `GaussianConditional` on its frontals and a new marginal on
    its separator, either by

    • ``"qr"``: Householder QR of the stacked ``[A | b]``, or
    • ``"cholesky"``: Cholesky of the summed frontal information block,
      with a Schur complement for the separator.

    The separator marginal is cached in the clique, which is what lets the
    incremental smoother re-eliminate only the top of the tree.

A frontal block that is not positive definite raises
`IndeterminateSystemError` naming the first variable at fault.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from isam_jit.core.exceptions import IndeterminateSystemError
from isam_jit.inference.bayes_tree import BayesTree, Clique
from isam_jit.linear.gaussian import (
    GaussianConditional,
    GaussianFactor,
    HessianFactor,
    JacobianFactor,
    split_columns,
)

logger = logging.getLogger("isam_jit.elimination")

METHODS = ("cholesky", "qr")

# Pivot tolerance relative to the largest entry of the frontal block.
_PIVOT_RTOL = 1e-10


class _SymbolicClique:
    __slots__ = ("frontals", "separator", "parent", "factors", "children")

    def __init__(self, frontals, separator, parent):
        self.frontals: List[int] = frontals
        self.separator: List[int] = separator
        self.parent: Optional[int] = parent
        self.factors: List[int] = []
        self.children: List[int] = []


def _lookup_key(index_to_key, index):
    if index_to_key is None:
        return None
    if callable(index_to_key):
        return index_to_key(index)
    return index_to_key.get(index)


def _symbolic(
    factors: Sequence[GaussianFactor],
    order: Sequence[int],
    index_to_key,
) -> List[_SymbolicClique]:
    position = {v: i for i, v in enumerate(order)}
    n = len(order)
    buckets: List[List[int]] = [[] for _ in range(n)]
    structure: List[set] = [set() for _ in range(n)]

    for fi, factor in enumerate(factors):
        if not factor.keys:
            continue
        for k in factor.keys:
            if k not in position:
                raise ValueError(f"Factor references index {k} which is not in the elimination order")
        first = min(position[k] for k in factor.keys)
        buckets[first].append(fi)
        structure[first].update(factor.keys)

    separators: List[List[int]] = []
    for i, v in enumerate(order):
        if not structure[i]:
            raise IndeterminateSystemError(
                index=v, key=_lookup_key(index_to_key, v), detail="no factor constrains this variable"
            )
        sep = sorted(structure[i] - {v}, key=position.__getitem__)
        separators.append(sep)
        if sep:
            structure[position[sep[0]]].update(sep)

    cliques: List[_SymbolicClique] = []
    owner: Dict[int, int] = {}
    for i in reversed(range(n)):
        v = order[i]
        sep = separators[i]
        if not sep:
            cliques.append(_SymbolicClique([v], [], None))
            owner[v] = len(cliques) - 1
            continue
        p = owner[sep[0]]
        parent = cliques[p]
        if len(sep) == len(parent.frontals) + len(parent.separator):
            parent.frontals.insert(0, v)
            owner[v] = p
        else:
            cliques.append(_SymbolicClique([v], list(sep), p))
            parent.children.append(len(cliques) - 1)
            owner[v] = len(cliques) - 1

    for i, v in enumerate(order):
        cliques[owner[v]].factors.extend(buckets[i])
    return cliques


def _offsets(keys: Sequence[int], dims: Mapping[int, int]) -> Dict[int, int]:
    out = {}
    start = 0
    for k in keys:
        out[k] = start
        start += dims[k]
    return out


def _failing_variable(diag_ok: np.ndarray, frontals: Sequence[int], dims: Mapping[int, int]) -> int:
    bad = int(np.argmin(diag_ok))
    start = 0
    for k in frontals:
        if bad < start + dims[k]:
            return k
        start += dims[k]
    return frontals[-1]


def _eliminate_qr(
    gathered: Sequence[GaussianFactor],
    frontals: List[int],
    separator: List[int],
    dims: Mapping[int, int],
    index_to_key,
):
    keys = frontals + separator
    offsets = _offsets(keys, dims)
    n = sum(dims[k] for k in keys)
    nf = sum(dims[k] for k in frontals)

    jacobians = [f.to_jacobian() for f in gathered]
    rows = sum(j.rows for j in jacobians)
    ab = np.zeros((rows, n + 1))
    r0 = 0
    for j in jacobians:
        for k, block in zip(j.keys, j.blocks):
            ab[r0:r0 + j.rows, offsets[k]:offsets[k] + block.shape[1]] = block
        ab[r0:r0 + j.rows, n] = j.b
        r0 += j.rows

    r_aug = np.linalg.qr(ab, mode="r")
    if r_aug.shape[0] < nf:
        padded = np.zeros((nf, n + 1))
        padded[:r_aug.shape[0]] = r_aug
        r_aug = padded

    diag = np.abs(np.diag(r_aug[:nf, :nf]))
    scale = max(1.0, float(np.max(np.abs(ab)))) if ab.size else 1.0
    ok = diag > _PIVOT_RTOL * scale
    if not np.all(ok):
        bad = _failing_variable(ok, frontals, dims)
        raise IndeterminateSystemError(
            index=bad, key=_lookup_key(index_to_key, bad), detail="zero diagonal in QR elimination"
        )

    conditional = GaussianConditional(
        frontals,
        [dims[k] for k in frontals],
        separator,
        [dims[k] for k in separator],
        r_aug[:nf, :nf],
        r_aug[:nf, nf:n],
        r_aug[:nf, n],
    )
    marginal = None
    if separator:
        rest = r_aug[nf:, nf:]
        marginal = JacobianFactor(separator, split_columns(rest[:, :-1], [dims[k] for k in separator]), rest[:, -1])
    return conditional, marginal


def _eliminate_cholesky(
    gathered: Sequence[GaussianFactor],
    frontals: List[int],
    separator: List[int],
    dims: Mapping[int, int],
    index_to_key,
):
    keys = frontals + separator
    offsets = _offsets(keys, dims)
    n = sum(dims[k] for k in keys)
    nf = sum(dims[k] for k in frontals)

    info = np.zeros((n, n))
    eta = np.zeros(n)
    constant = 0.0
    for factor in gathered:
        h = factor.to_hessian()
        idx = np.concatenate([np.arange(offsets[k], offsets[k] + d) for k, d in zip(h.keys, h.key_dims)])
        info[np.ix_(idx, idx)] += h.information
        eta[idx] += h.linear_term
        constant += h.constant

    lam_ff = info[:nf, :nf]
    try:
        chol = np.linalg.cholesky(lam_ff)
    except np.linalg.LinAlgError:
        bad = _first_cholesky_failure(lam_ff, frontals, dims)
        raise IndeterminateSystemError(
            index=bad, key=_lookup_key(index_to_key, bad), detail="frontal information block is not positive definite"
        ) from None
    scale = np.sqrt(max(1.0, float(np.max(np.abs(lam_ff)))))
    ok = np.diag(chol) > _PIVOT_RTOL * scale
    if not np.all(ok):
        bad = _failing_variable(ok, frontals, dims)
        raise IndeterminateSystemError(
            index=bad, key=_lookup_key(index_to_key, bad), detail="vanishing pivot in Cholesky elimination"
        )

    R = chol.T
    S = np.linalg.solve(chol, info[:nf, nf:])
    d = np.linalg.solve(chol, eta[:nf])
    conditional = GaussianConditional(
        frontals, [dims[k] for k in frontals], separator, [dims[k] for k in separator], R, S, d
    )
    marginal = None
    if separator:
        marginal = HessianFactor(
            separator,
            [dims[k] for k in separator],
            info[nf:, nf:] - S.T @ S,
            eta[nf:] - S.T @ d,
            constant - float(d @ d),
        )
    return conditional, marginal


def _first_cholesky_failure(lam_ff: np.ndarray, frontals: Sequence[int], dims: Mapping[int, int]) -> int:
    end = 0
    for k in frontals:
        end += dims[k]
        try:
            np.linalg.cholesky(lam_ff[:end, :end])
        except np.linalg.LinAlgError:
            return k
    return frontals[-1]


def eliminate(
    factors: Sequence[GaussianFactor],
    order: Sequence[int],
    dims: Mapping[int, int],
    method: str = "cholesky",
    index_to_key: Optional[Callable[[int], object]] = None,
) -> BayesTree:
    """
    Eliminate ``factors`` in ``order`` into a new Bayes tree.

    Args:
        factors: Jacobian or Hessian factors over variable indices. Every
            index they reference must appear in ``order``.
        order: elimination order; the last variable ends up in a root clique.
        dims: ``index -> dimension`` for every index in ``order``.
        method: ``"cholesky"`` or ``"qr"``.
        index_to_key: optional lookup used to name the variable in errors.

    Returns:
        A `BayesTree` whose cliques cache their separator marginals.

    Raises:
        IndeterminateSystemError: if a frontal block is singular or a
            variable is not constrained by any factor.
    """
    if method not in METHODS:
        raise ValueError(f"Unknown elimination method '{method}', expected one of {METHODS}")

    symbolic = _symbolic(factors, order, index_to_key)
    step = _eliminate_qr if method == "qr" else _eliminate_cholesky

    numeric: List[Optional[Clique]] = [None] * len(symbolic)
    marginals: List[Optional[GaussianFactor]] = [None] * len(symbolic)
    # Children are created after their parents, so reverse creation order is bottom-up.
    for ci in reversed(range(len(symbolic))):
        sc = symbolic[ci]
        gathered = [factors[fi] for fi in sc.factors]
        gathered.extend(marginals[child] for child in sc.children if marginals[child] is not None)
        conditional, marginal = step(gathered, sc.frontals, sc.separator, dims, index_to_key)
        marginals[ci] = marginal
        numeric[ci] = Clique(conditional, marginal)

    tree = BayesTree()
    handles: Dict[int, int] = {}
    for ci, sc in enumerate(symbolic):
        parent = None if sc.parent is None else handles[sc.parent]
        handles[ci] = tree.add_clique(numeric[ci], parent)

    logger.debug("Eliminated %d variables into %d cliques (%s)", len(order), len(symbolic), method)
    return tree
