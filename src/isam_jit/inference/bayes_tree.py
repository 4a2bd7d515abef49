# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Bayes tree of Gaussian cliques.

The Bayes tree is the data structure the incremental smoother keeps between
updates. Each clique owns

    • one `GaussianConditional` p(frontals | separator),
    • the cached marginal factor on its separator, i.e. the result of
      eliminating everything in its subtree, and
    • the cached contribution of its conditional to the gradient at zero.

Cliques live in an arena (``handle -> Clique``). Parent and child links are
handles: the parent link is a back-reference used for traversal only, the
arena owns every clique. Handles are never reused within one tree.

Structural invariants
---------------------
• Every variable index is a frontal of exactly one clique (`clique_of`).
• A clique's separator is contained in its parent's frontals ∪ separator.
• Roots have an empty separator.

Incremental operations
----------------------
find_affected(indices)
    Cliques holding any of the indices as frontal, plus all their
    ancestors: an ancestor's cached marginal summarizes the subtree below
    it, so it is stale as soon as anything below it changes.

collect_top / remove_top(affected)
    The affected cliques form the top of the tree. Removing them leaves
    orphan subtrees whose cached separator marginals ("boundary factors")
    must be re-eliminated together with the relinearized factors.

splice(fragment, orphans)
    Adopt a freshly eliminated fragment and hang each orphan below the
    fragment clique that covers its separator.

Linear algebra on the tree
--------------------------
optimize / optimize_wildfire
    Top-down back-substitution. The wildfire variant only descends below
    cliques that were replaced or whose separator values moved.

gradient_at_zero, rg_product, model_reduction
    Quantities needed by the dogleg step, computed from the cached clique
    contributions instead of the original Jacobians.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set

import numpy as np

from isam_jit.linear.gaussian import GaussianConditional, GaussianFactor


class CliqueStatus(Enum):
    """Role of a clique in one incremental update."""
    AFFECTED = "affected"
    ORPHANED = "orphaned"
    UNAFFECTED = "unaffected"


class Clique:
    """One node of the Bayes tree."""

    def __init__(
        self,
        conditional: GaussianConditional,
        cached_factor: Optional[GaussianFactor] = None,
    ) -> None:
        self.conditional = conditional
        self.cached_factor = cached_factor
        self.gradient_contribution: np.ndarray = conditional.gradient_contribution()
        self.parent: Optional[int] = None
        self.children: List[int] = []

    @property
    def frontals(self) -> List[int]:
        return self.conditional.frontals

    @property
    def separator(self) -> List[int]:
        return self.conditional.parents

    def keys(self) -> List[int]:
        return self.conditional.keys

    def permute_with_inverse(self, inverse: Sequence[int]) -> None:
        self.conditional.permute_with_inverse(inverse)
        if self.cached_factor is not None:
            self.cached_factor.permute_with_inverse(inverse)

    def __repr__(self) -> str:
        return f"Clique(frontals={self.frontals}, separator={self.separator})"


@dataclass
class TopRemoval:
    """What `remove_top` takes out of the tree and what must be re-eliminated."""
    removed: List[int] = field(default_factory=list)
    orphans: List[int] = field(default_factory=list)
    boundary_factors: List[GaussianFactor] = field(default_factory=list)
    removed_indices: List[int] = field(default_factory=list)


class BayesTree:
    """Arena of cliques with root list and ``index -> clique`` map."""

    def __init__(self) -> None:
        self._cliques: Dict[int, Clique] = {}
        self._roots: List[int] = []
        self._nodes: Dict[int, int] = {}
        self._next_handle = 0

    # --- Arena access ---

    def add_clique(self, clique: Clique, parent: Optional[int] = None) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._cliques[handle] = clique
        clique.parent = parent
        clique.children = []
        if parent is None:
            self._roots.append(handle)
        else:
            self._cliques[parent].children.append(handle)
        for index in clique.frontals:
            self._nodes[index] = handle
        return handle

    def __getitem__(self, handle: int) -> Clique:
        return self._cliques[handle]

    def __len__(self) -> int:
        return len(self._cliques)

    def __iter__(self) -> Iterator[int]:
        return iter(self._cliques)

    def __contains__(self, index) -> bool:
        """True if the variable index is a frontal of some clique."""
        return index in self._nodes

    @property
    def roots(self) -> List[int]:
        return list(self._roots)

    def handle_of(self, index: int) -> int:
        return self._nodes[index]

    def clique_of(self, index: int) -> Clique:
        return self._cliques[self._nodes[index]]

    def indices(self) -> List[int]:
        return sorted(self._nodes)

    def preorder(self) -> List[int]:
        out = []
        stack = list(reversed(self._roots))
        while stack:
            h = stack.pop()
            out.append(h)
            stack.extend(reversed(self._cliques[h].children))
        return out

    def nodes(self) -> List[Clique]:
        """Distinct cliques in preorder from the roots."""
        return [self._cliques[h] for h in self.preorder()]

    def dims(self) -> Dict[int, int]:
        out = {}
        for clique in self._cliques.values():
            for index, dim in zip(clique.frontals, clique.conditional.frontal_dims):
                out[index] = dim
        return out

    # --- Structural queries ---

    def find_affected(self, indices: Iterable[int]) -> Set[int]:
        affected: Set[int] = set()
        for index in indices:
            handle = self._nodes.get(index)
            while handle is not None and handle not in affected:
                affected.add(handle)
                handle = self._cliques[handle].parent
        return affected

    def classify(self, affected: Set[int]) -> Dict[int, CliqueStatus]:
        status = {}
        for handle, clique in self._cliques.items():
            if handle in affected:
                status[handle] = CliqueStatus.AFFECTED
            elif clique.parent is not None and clique.parent in affected:
                status[handle] = CliqueStatus.ORPHANED
            else:
                status[handle] = CliqueStatus.UNAFFECTED
        return status

    def collect_top(self, affected: Set[int]) -> TopRemoval:
        """Describe the removal of ``affected`` without modifying the tree."""
        removal = TopRemoval()
        for handle in self.preorder():
            if handle not in affected:
                continue
            clique = self._cliques[handle]
            removal.removed.append(handle)
            removal.removed_indices.extend(clique.frontals)
            for child in clique.children:
                if child not in affected:
                    removal.orphans.append(child)
                    removal.boundary_factors.append(self._cliques[child].cached_factor)
        return removal

    def remove_top(self, affected: Set[int]) -> TopRemoval:
        """
        Detach the affected cliques. Orphans stay in the arena, detached,
        until `splice` reattaches them.
        """
        removal = self.collect_top(affected)
        for handle in removal.removed:
            clique = self._cliques.pop(handle)
            for index in clique.frontals:
                if self._nodes.get(index) == handle:
                    del self._nodes[index]
        self._roots = [h for h in self._roots if h not in affected]
        for orphan in removal.orphans:
            self._cliques[orphan].parent = None
        return removal

    def splice(self, fragment: "BayesTree", orphans: Sequence[int] = ()) -> List[int]:
        """
        Adopt every clique of ``fragment`` (given new handles here) and attach
        each orphan below the adopted clique whose frontals ∪ separator cover
        the orphan's separator. Returns the new handles.
        """
        mapping: Dict[int, int] = {}
        for old in fragment.preorder():
            clique = fragment._cliques[old]
            parent = None if clique.parent is None else mapping[clique.parent]
            mapping[old] = self.add_clique(clique, parent)
        adopted = list(mapping.values())

        for orphan in orphans:
            clique = self._cliques[orphan]
            parent = self._find_cover(clique.separator, adopted)
            clique.parent = parent
            if parent is None:
                self._roots.append(orphan)
            else:
                self._cliques[parent].children.append(orphan)
        return adopted

    def _find_cover(self, separator: Sequence[int], candidates: Sequence[int]) -> Optional[int]:
        if not separator:
            return None
        needed = set(separator)
        first = self._nodes.get(min(separator))
        if first is not None and needed <= set(self._cliques[first].keys()):
            return first
        for handle in candidates:
            if needed <= set(self._cliques[handle].keys()):
                return handle
        return None

    def permute_with_inverse(self, inverse: Sequence[int]) -> None:
        """Relabel every conditional and cached factor; shape is unchanged."""
        for clique in self._cliques.values():
            clique.permute_with_inverse(inverse)
        self._nodes = {int(inverse[index]): handle for index, handle in self._nodes.items()}

    def clone(self) -> "BayesTree":
        return copy.deepcopy(self)

    # --- Linear algebra ---

    def optimize(self) -> Dict[int, np.ndarray]:
        """Full back-substitution from the roots."""
        x: Dict[int, np.ndarray] = {}
        for handle in self.preorder():
            x.update(self._cliques[handle].conditional.solve(x))
        return x

    def optimize_wildfire(self, delta, replaced: Set[int], threshold: float) -> int:
        """
        Back-substitute into ``delta`` (indexable by variable index), starting
        at the replaced cliques. A non-replaced clique is recomputed only if
        one of its separator values moved by more than ``threshold``.
        Returns the number of cliques recomputed.
        """
        changed: Set[int] = set()
        count = 0
        stack = list(reversed(self._roots))
        while stack:
            handle = stack.pop()
            clique = self._cliques[handle]
            if handle not in replaced and not any(p in changed for p in clique.separator):
                continue
            count += 1
            for index, value in clique.conditional.solve(delta).items():
                old = delta[index]
                if old.shape != value.shape or np.max(np.abs(value - old), initial=0.0) > threshold:
                    changed.add(index)
                delta[index] = value
            stack.extend(reversed(clique.children))
        return count

    def gradient_at_zero(self) -> Dict[int, np.ndarray]:
        """Sum of the cached per-clique gradient contributions."""
        grad = {index: np.zeros(dim) for index, dim in self.dims().items()}
        for clique in self._cliques.values():
            start = 0
            for index, dim in zip(clique.conditional.keys, clique.conditional.dims):
                grad[index] = grad[index] + clique.gradient_contribution[start:start + dim]
                start += dim
        return grad

    def rg_product(self, g: Mapping[int, np.ndarray]) -> Dict[int, np.ndarray]:
        """``R g`` split by frontal variable, with ``R`` the whole tree's square-root information."""
        out = {}
        for clique in self._cliques.values():
            rows = clique.conditional.whitened_rows(g)
            start = 0
            for index, dim in zip(clique.frontals, clique.conditional.frontal_dims):
                out[index] = rows[start:start + dim]
                start += dim
        return out

    def model_reduction(self, dx: Mapping[int, np.ndarray]) -> float:
        """Decrease of the linear model ``0.5 * ||R dx - d||²`` from ``dx = 0`` to ``dx``."""
        total = 0.0
        for clique in self._cliques.values():
            d = clique.conditional.d
            r = clique.conditional.whitened_rows(dx, rhs=d)
            total += 0.5 * (float(d @ d) - float(r @ r))
        return total

    def __repr__(self) -> str:
        return f"BayesTree(cliques={len(self._cliques)}, roots={self._roots})"
