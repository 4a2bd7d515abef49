from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose

from isam_jit.core.exceptions import IndeterminateSystemError
from isam_jit.linear.elimination import eliminate
from isam_jit.linear.gaussian import GaussianConditional, HessianFactor, JacobianFactor

I2 = np.eye(2)


def chain_factors():
    """
    Linear chain over three 2-D variables:

        prior on 0:      x0        = [1, 2]
        between 0 -> 1:  x1 - x0   = [1, 0]
        between 1 -> 2:  x2 - x1   = [1, 1]

    Exact solution x0 = [1, 2], x1 = [2, 2], x2 = [3, 3].
    """
    return [
        JacobianFactor([0], [I2], [1.0, 2.0]),
        JacobianFactor([0, 1], [-I2, I2], [1.0, 0.0]),
        JacobianFactor([1, 2], [-I2, I2], [1.0, 1.0]),
    ]


DIMS = {0: 2, 1: 2, 2: 2}


def random_problem(seed: int = 0, n: int = 4, dim: int = 2):
    rng = np.random.default_rng(seed)
    factors = [JacobianFactor([i], [np.eye(dim) + 0.1 * rng.standard_normal((dim, dim))], rng.standard_normal(dim)) for i in range(n)]
    for i in range(n - 1):
        factors.append(
            JacobianFactor(
                [i, i + 1],
                [rng.standard_normal((3, dim)), rng.standard_normal((3, dim))],
                rng.standard_normal(3),
            )
        )
    factors.append(JacobianFactor([0, n - 1], [rng.standard_normal((2, dim)), rng.standard_normal((2, dim))], rng.standard_normal(2)))
    dims = {i: dim for i in range(n)}
    return factors, dims


def dense(factors, dims):
    n = sum(dims.values())
    offsets = {}
    start = 0
    for k in sorted(dims):
        offsets[k] = start
        start += dims[k]
    rows = []
    rhs = []
    for f in factors:
        block = np.zeros((f.rows, n))
        for k, a in zip(f.keys, f.blocks):
            block[:, offsets[k]:offsets[k] + dims[k]] = a
        rows.append(block)
        rhs.append(f.b)
    return np.vstack(rows), np.concatenate(rhs)


@pytest.mark.parametrize("method", ["cholesky", "qr"])
def test_chain_solution(method):
    tree = eliminate(chain_factors(), [0, 1, 2], DIMS, method)
    x = tree.optimize()
    assert_allclose(x[0], [1.0, 2.0], atol=1e-10)
    assert_allclose(x[1], [2.0, 2.0], atol=1e-10)
    assert_allclose(x[2], [3.0, 3.0], atol=1e-10)


def test_chain_clique_structure():
    """
    Variable 1 has separator {2}, the whole root clique, so it is merged
    into the root. Variable 0 has separator {1}, smaller than the root's
    key set, so it becomes a child clique.
    """
    tree = eliminate(chain_factors(), [0, 1, 2], DIMS, "cholesky")
    assert len(tree) == 2
    root = tree[tree.roots[0]]
    assert root.frontals == [1, 2]
    assert root.separator == []
    child = tree.clique_of(0)
    assert child.frontals == [0]
    assert child.separator == [1]
    assert child.parent == tree.roots[0]
    assert tree.clique_of(1) is root
    assert [c.frontals for c in tree.nodes()] == [[1, 2], [0]]


@pytest.mark.parametrize("method", ["cholesky", "qr"])
def test_matches_dense_least_squares(method):
    factors, dims = random_problem()
    A, b = dense(factors, dims)
    expected = np.linalg.lstsq(A, b, rcond=None)[0]

    tree = eliminate(factors, [0, 1, 2, 3], dims, method)
    x = tree.optimize()
    actual = np.concatenate([x[i] for i in range(4)])
    assert_allclose(actual, expected, atol=1e-9)


@pytest.mark.parametrize("method", ["cholesky", "qr"])
def test_gradient_and_rg_from_cliques(method):
    factors, dims = random_problem(seed=3)
    A, b = dense(factors, dims)
    tree = eliminate(factors, [2, 0, 3, 1], dims, method)

    grad = tree.gradient_at_zero()
    assert_allclose(np.concatenate([grad[i] for i in range(4)]), -A.T @ b, atol=1e-9)

    g = {i: np.full(2, 0.1 * (i + 1)) for i in range(4)}
    rg = tree.rg_product(g)
    gv = np.concatenate([g[i] for i in range(4)])
    rg_norm2 = sum(float(v @ v) for v in rg.values())
    assert rg_norm2 == pytest.approx(float(np.sum((A @ gv) ** 2)), rel=1e-9)

    # model reduction is 0.5 * (||b||² - ||A dx - b||²) for the same system
    dx = {i: np.full(2, -0.05 * i) for i in range(4)}
    dxv = np.concatenate([dx[i] for i in range(4)])
    expected = 0.5 * (float(b @ b) - float(np.sum((A @ dxv - b) ** 2)))
    assert tree.model_reduction(dx) == pytest.approx(expected, rel=1e-9, abs=1e-12)


def test_qr_and_cholesky_cache_equivalent_marginals():
    factors, dims = random_problem(seed=5)
    order = [0, 1, 2, 3]
    tree_qr = eliminate(factors, order, dims, "qr")
    tree_ch = eliminate(factors, order, dims, "cholesky")

    rng = np.random.default_rng(1)
    x = {i: rng.standard_normal(2) for i in range(4)}
    for h in tree_qr:
        clique = tree_qr[h]
        if clique.cached_factor is None:
            continue
        other = tree_ch.clique_of(clique.frontals[0])
        assert isinstance(clique.cached_factor, JacobianFactor)
        assert isinstance(other.cached_factor, HessianFactor)
        assert clique.cached_factor.error(x) == pytest.approx(other.cached_factor.error(x), rel=1e-8)


@pytest.mark.parametrize("method", ["cholesky", "qr"])
def test_unconstrained_variable_is_indeterminate(method):
    factors = chain_factors()[:2]
    with pytest.raises(IndeterminateSystemError) as info:
        eliminate(factors, [0, 1, 2], DIMS, method, index_to_key={2: "x2"}.get)
    assert info.value.index == 2
    assert info.value.key == "x2"


@pytest.mark.parametrize("method", ["cholesky", "qr"])
def test_rank_deficient_block_is_indeterminate(method):
    factors = [JacobianFactor([0], [np.array([[1.0, 0.0]])], [1.0])]
    with pytest.raises(IndeterminateSystemError):
        eliminate(factors, [0], {0: 2}, method)
    # also an ArithmeticError
    with pytest.raises(ArithmeticError):
        eliminate(factors, [0], {0: 2}, method)


def test_unknown_method():
    with pytest.raises(ValueError):
        eliminate(chain_factors(), [0, 1, 2], DIMS, "lu")


def test_single_clique_back_substitution():
    """
    p(x0 | x1): R x0 + S x1 = d, solved given the parent value.
    """
    R = np.array([[2.0, 1.0], [0.0, 4.0]])
    S = np.array([[1.0, 0.0], [0.5, 1.0]])
    d = np.array([3.0, 2.0])
    conditional = GaussianConditional([0], [2], [1], [2], R, S, d)
    x1 = np.array([1.0, -1.0])

    x = conditional.solve({1: x1})
    assert_allclose(x[0], np.linalg.solve(R, d - S @ x1))
    assert conditional.to_jacobian().error({0: x[0], 1: x1}) == pytest.approx(0.0, abs=1e-20)
    assert_allclose(
        conditional.gradient_contribution(),
        -np.concatenate([R.T @ d, S.T @ d]),
    )


def test_hessian_to_jacobian_preserves_error():
    jf = JacobianFactor([3, 7], [np.array([[1.0, 2.0], [0.0, 1.0], [1.0, 1.0]]), np.array([[0.5], [1.0], [0.0]])], [1.0, -1.0, 2.0])
    back = jf.to_hessian().to_jacobian()
    x = {3: np.array([0.3, -0.2]), 7: np.array([1.5])}
    assert back.keys == [3, 7]
    assert back.error(x) == pytest.approx(jf.error(x), rel=1e-9)
