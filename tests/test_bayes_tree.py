from __future__ import annotations

import numpy as np
import pytest
from numpy.testing import assert_allclose

from isam_jit.inference.bayes_tree import CliqueStatus
from isam_jit.linear.elimination import eliminate
from isam_jit.linear.gaussian import JacobianFactor
from isam_jit.linear.vector_values import Permuted

I2 = np.eye(2)
DIMS = {i: 2 for i in range(4)}


def chain4():
    """
    Prior on 0 and unit steps 0 -> 1 -> 2 -> 3.

    Eliminated in natural order the tree is

        [2, 3]          (root)
          [1 | 2]
            [0 | 1]
    """
    return [
        JacobianFactor([0], [I2], [0.0, 0.0]),
        JacobianFactor([0, 1], [-I2, I2], [1.0, 0.0]),
        JacobianFactor([1, 2], [-I2, I2], [1.0, 0.0]),
        JacobianFactor([2, 3], [-I2, I2], [1.0, 0.0]),
    ]


def test_tree_shape():
    tree = eliminate(chain4(), [0, 1, 2, 3], DIMS)
    assert [c.frontals for c in tree.nodes()] == [[2, 3], [1], [0]]
    assert tree.clique_of(0).separator == [1]
    assert tree.clique_of(1).separator == [2]


def test_find_affected_and_classify():
    tree = eliminate(chain4(), [0, 1, 2, 3], DIMS)
    h0, h1, hroot = tree.handle_of(0), tree.handle_of(1), tree.handle_of(3)

    assert tree.find_affected([1]) == {h1, hroot}
    assert tree.find_affected([0]) == {h0, h1, hroot}

    status = tree.classify(tree.find_affected([3]))
    assert status[hroot] is CliqueStatus.AFFECTED
    assert status[h1] is CliqueStatus.ORPHANED
    assert status[h0] is CliqueStatus.UNAFFECTED


def test_collect_top_is_pure_and_remove_top_detaches():
    tree = eliminate(chain4(), [0, 1, 2, 3], DIMS)
    affected = tree.find_affected([3])
    h1 = tree.handle_of(1)

    removal = tree.collect_top(affected)
    assert len(tree) == 3
    assert removal.orphans == [h1]
    assert sorted(removal.removed_indices) == [2, 3]
    assert removal.boundary_factors[0].keys == [2]

    removal = tree.remove_top(affected)
    assert len(tree) == 2
    assert tree.roots == []
    assert tree[h1].parent is None
    assert 3 not in tree
    assert 1 in tree


def test_incremental_splice_matches_batch():
    """
    Add a prior on x3 = [2.5, 0.5]: only the root clique is affected. It is
    re-eliminated together with the orphan's boundary factor and the orphan
    is reattached below the new fragment.
    """
    factors = chain4()
    new_prior = JacobianFactor([3], [I2], [2.5, 0.5])
    tree = eliminate(factors, [0, 1, 2, 3], DIMS)

    removal = tree.remove_top(tree.find_affected([3]))
    fragment = eliminate([factors[3], new_prior] + removal.boundary_factors, [2, 3], DIMS)
    adopted = tree.splice(fragment, removal.orphans)

    assert len(adopted) == 1
    assert tree.clique_of(1).parent == adopted[0]
    assert len(tree.roots) == 1

    expected = eliminate(factors + [new_prior], [0, 1, 2, 3], DIMS).optimize()
    actual = tree.optimize()
    for i in range(4):
        assert_allclose(actual[i], expected[i], atol=1e-10)


def test_permute_with_inverse_relabels_everything():
    """Swap indices 1 and 2: same shape, relabelled conditionals, same solution."""
    tree = eliminate(chain4(), [0, 1, 2, 3], DIMS)
    before = tree.optimize()
    shape = [len(c.frontals) for c in tree.nodes()]

    inverse = [0, 2, 1, 3]
    tree.permute_with_inverse(inverse)

    assert [len(c.frontals) for c in tree.nodes()] == shape
    assert tree.clique_of(2).separator == [1]
    assert tree.clique_of(0).separator == [2]
    assert tree[tree.roots[0]].frontals == [1, 3]
    assert tree.clique_of(0).cached_factor.keys == [2]

    after = tree.optimize()
    for old, new in enumerate(inverse):
        assert_allclose(after[new], before[old], atol=1e-12)


def test_clone_is_independent():
    tree = eliminate(chain4(), [0, 1, 2, 3], DIMS)
    copy = tree.clone()
    copy.permute_with_inverse([3, 2, 1, 0])

    assert tree.clique_of(0).separator == [1]
    assert copy.clique_of(3).separator == [2]
    assert tree.clique_of(0) is not copy.clique_of(3)


@pytest.mark.parametrize("threshold", [0.0, 1e-3])
def test_wildfire_updates_delta(threshold):
    tree = eliminate(chain4(), [0, 1, 2, 3], DIMS)
    delta = Permuted.empty()
    for _ in range(4):
        delta.push_back(np.zeros(2))

    count = tree.optimize_wildfire(delta, set(tree.roots), threshold)
    assert count == 3
    expected = tree.optimize()
    for i in range(4):
        assert_allclose(delta[i], expected[i], atol=1e-10)

    # Nothing replaced and nothing moved: no clique is recomputed.
    assert tree.optimize_wildfire(delta, set(), threshold) == 0
