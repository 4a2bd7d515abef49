# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Linear Gaussian factors and conditionals over variable indices.

JacobianFactor
    Whitened least-squares term ``0.5 * ||A x - b||²`` with one column
    block per variable index. Produced by linearizing a nonlinear factor
    (``A = J``, ``b = -r``) and by QR elimination of a clique (the
    separator marginal).

HessianFactor
    Information form of the same quantity: ``Λ = AᵀA``, ``η = Aᵀb``,
    ``f = bᵀb``. Produced by Cholesky elimination of a clique.

GaussianConditional
    Density of a clique's frontal variables given its separator (parents):
    ``R x_F + S x_S = d`` with ``R`` upper triangular. Back-substitution
    solves it top-down through the Bayes tree.

All three carry *indices*, never keys, so they are relabelled by
``permute_with_inverse`` whenever the ordering changes.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np


def split_columns(matrix: np.ndarray, dims: Sequence[int]) -> List[np.ndarray]:
    blocks = []
    start = 0
    for d in dims:
        blocks.append(matrix[:, start:start + d])
        start += d
    return blocks


def _stack_vector(x: Mapping[int, np.ndarray], keys: Sequence[int]) -> np.ndarray:
    if not keys:
        return np.zeros(0)
    return np.concatenate([np.asarray(x[k], dtype=np.float64) for k in keys])


class JacobianFactor:
    """Least-squares factor ``0.5 * ||sum_j A_j x_j - b||²``."""

    def __init__(self, keys: Sequence[int], blocks: Sequence[np.ndarray], b: np.ndarray) -> None:
        if len(keys) != len(blocks):
            raise ValueError("JacobianFactor needs one block per key")
        self.keys: List[int] = [int(k) for k in keys]
        self.blocks: List[np.ndarray] = [np.asarray(a, dtype=np.float64) for a in blocks]
        self.b: np.ndarray = np.asarray(b, dtype=np.float64).reshape(-1)
        for a in self.blocks:
            if a.ndim != 2 or a.shape[0] != self.b.shape[0]:
                raise ValueError("JacobianFactor block rows must match the length of b")

    @property
    def rows(self) -> int:
        return self.b.shape[0]

    def dims(self) -> Dict[int, int]:
        return {k: a.shape[1] for k, a in zip(self.keys, self.blocks)}

    def matrix(self) -> np.ndarray:
        if not self.blocks:
            return np.zeros((self.rows, 0))
        return np.hstack(self.blocks)

    def error(self, x: Mapping[int, np.ndarray]) -> float:
        e = self.matrix() @ _stack_vector(x, self.keys) - self.b
        return 0.5 * float(e @ e)

    def gradient_at_zero(self) -> Dict[int, np.ndarray]:
        """Gradient of the factor's error at ``x = 0``: ``-Aᵀ b`` per key."""
        return {k: -(a.T @ self.b) for k, a in zip(self.keys, self.blocks)}

    def to_hessian(self) -> "HessianFactor":
        a = self.matrix()
        return HessianFactor(
            self.keys,
            [blk.shape[1] for blk in self.blocks],
            a.T @ a,
            a.T @ self.b,
            float(self.b @ self.b),
        )

    def to_jacobian(self) -> "JacobianFactor":
        return self

    def permute_with_inverse(self, inverse: Sequence[int]) -> None:
        self.keys = [int(inverse[k]) for k in self.keys]

    def permuted(self, inverse: Sequence[int]) -> "JacobianFactor":
        return JacobianFactor([inverse[k] for k in self.keys], self.blocks, self.b)

    def __repr__(self) -> str:
        return f"JacobianFactor(keys={self.keys}, rows={self.rows})"


class HessianFactor:
    """Information-form factor ``0.5 * (xᵀΛx - 2xᵀη + f)`` over indices."""

    def __init__(
        self,
        keys: Sequence[int],
        dims: Sequence[int],
        information: np.ndarray,
        linear_term: np.ndarray,
        constant: float = 0.0,
    ) -> None:
        self.keys: List[int] = [int(k) for k in keys]
        self.key_dims: List[int] = [int(d) for d in dims]
        self.information = np.asarray(information, dtype=np.float64)
        self.linear_term = np.asarray(linear_term, dtype=np.float64).reshape(-1)
        self.constant = float(constant)
        n = sum(self.key_dims)
        if self.information.shape != (n, n) or self.linear_term.shape != (n,):
            raise ValueError("HessianFactor blocks do not match the key dimensions")

    def dims(self) -> Dict[int, int]:
        return dict(zip(self.keys, self.key_dims))

    def error(self, x: Mapping[int, np.ndarray]) -> float:
        v = _stack_vector(x, self.keys)
        return 0.5 * float(v @ self.information @ v - 2.0 * v @ self.linear_term + self.constant)

    def gradient_at_zero(self) -> Dict[int, np.ndarray]:
        out = {}
        start = 0
        for k, d in zip(self.keys, self.key_dims):
            out[k] = -self.linear_term[start:start + d]
            start += d
        return out

    def to_hessian(self) -> "HessianFactor":
        return self

    def to_jacobian(self) -> JacobianFactor:
        """
        Square-root form of the augmented information matrix. Directions with
        a vanishing eigenvalue carry no information and are dropped.
        """
        n = self.information.shape[0]
        aug = np.zeros((n + 1, n + 1))
        aug[:n, :n] = self.information
        aug[:n, n] = self.linear_term
        aug[n, :n] = self.linear_term
        aug[n, n] = self.constant
        eigvals, eigvecs = np.linalg.eigh(0.5 * (aug + aug.T))
        scale = max(1.0, float(np.max(np.abs(eigvals)))) if eigvals.size else 1.0
        keep = eigvals > 1e-12 * scale
        rows = np.sqrt(eigvals[keep])[:, None] * eigvecs[:, keep].T
        return JacobianFactor(self.keys, split_columns(rows[:, :n], self.key_dims), rows[:, n])

    def permute_with_inverse(self, inverse: Sequence[int]) -> None:
        self.keys = [int(inverse[k]) for k in self.keys]

    def permuted(self, inverse: Sequence[int]) -> "HessianFactor":
        return HessianFactor(
            [inverse[k] for k in self.keys],
            self.key_dims,
            self.information,
            self.linear_term,
            self.constant,
        )

    def __repr__(self) -> str:
        return f"HessianFactor(keys={self.keys}, dims={self.key_dims})"


GaussianFactor = Union[JacobianFactor, HessianFactor]


class GaussianConditional:
    """
    Conditional density of frontal variables given parents:

        R x_F + S x_S = d

    ``R`` is upper triangular over the stacked frontal dimensions, ``S``
    spans the stacked parent dimensions. Both blocks are stored dense.
    """

    def __init__(
        self,
        frontals: Sequence[int],
        frontal_dims: Sequence[int],
        parents: Sequence[int],
        parent_dims: Sequence[int],
        R: np.ndarray,
        S: np.ndarray,
        d: np.ndarray,
    ) -> None:
        self.frontals: List[int] = [int(k) for k in frontals]
        self.parents: List[int] = [int(k) for k in parents]
        self.frontal_dims: List[int] = [int(x) for x in frontal_dims]
        self.parent_dims: List[int] = [int(x) for x in parent_dims]
        self.R = np.asarray(R, dtype=np.float64)
        nf = sum(self.frontal_dims)
        ns = sum(self.parent_dims)
        self.S = np.asarray(S, dtype=np.float64).reshape(nf, ns)
        self.d = np.asarray(d, dtype=np.float64).reshape(-1)

    @property
    def keys(self) -> List[int]:
        return self.frontals + self.parents

    @property
    def dims(self) -> List[int]:
        return self.frontal_dims + self.parent_dims

    def solve(self, x: Mapping[int, np.ndarray]) -> Dict[int, np.ndarray]:
        """Back-substitute: ``x_F = R⁻¹ (d - S x_S)`` given parent values."""
        rhs = self.d
        if self.parents:
            rhs = rhs - self.S @ _stack_vector(x, self.parents)
        xf = np.linalg.solve(self.R, rhs)
        out = {}
        start = 0
        for k, dim in zip(self.frontals, self.frontal_dims):
            out[k] = xf[start:start + dim]
            start += dim
        return out

    def whitened_rows(self, x: Mapping[int, np.ndarray], rhs: Optional[np.ndarray] = None) -> np.ndarray:
        """``R x_F + S x_S - rhs`` (``rhs`` defaults to zero)."""
        out = self.R @ _stack_vector(x, self.frontals)
        if self.parents:
            out = out + self.S @ _stack_vector(x, self.parents)
        if rhs is not None:
            out = out - rhs
        return out

    def to_jacobian(self) -> JacobianFactor:
        blocks = split_columns(self.R, self.frontal_dims) + split_columns(self.S, self.parent_dims)
        return JacobianFactor(self.keys, blocks, self.d)

    def gradient_contribution(self) -> np.ndarray:
        """Gradient at zero of ``0.5 * ||[R S] x - d||²``, stacked over :attr:`keys`."""
        return -np.concatenate([self.R.T @ self.d, self.S.T @ self.d])

    def permute_with_inverse(self, inverse: Sequence[int]) -> None:
        self.frontals = [int(inverse[k]) for k in self.frontals]
        self.parents = [int(inverse[k]) for k in self.parents]

    def __repr__(self) -> str:
        return f"GaussianConditional(frontals={self.frontals}, parents={self.parents})"
