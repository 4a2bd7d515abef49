# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Per-variable update vectors.

VectorValues
    Slot-addressed storage: one vector per variable, appended as variables
    are created and never moved afterwards.

Permuted
    View that addresses a `VectorValues` by *index* through a
    :class:`~isam_jit.core.ordering.Permutation` (``index -> slot``).
    Reordering the variables only rewrites the permutation; the stored
    vectors stay in their slots.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Sequence

import numpy as np

from isam_jit.core.ordering import Permutation


class VectorValues:
    """Append-only list of vectors addressed by slot."""

    def __init__(self, vectors: Sequence[np.ndarray] = ()) -> None:
        self._vectors: List[np.ndarray] = [np.asarray(v, dtype=np.float64).reshape(-1) for v in vectors]

    @classmethod
    def zero(cls, dims: Sequence[int]) -> "VectorValues":
        return cls([np.zeros(d) for d in dims])

    def append(self, vector) -> int:
        self._vectors.append(np.asarray(vector, dtype=np.float64).reshape(-1))
        return len(self._vectors) - 1

    def __getitem__(self, slot: int) -> np.ndarray:
        return self._vectors[slot]

    def __setitem__(self, slot: int, vector) -> None:
        vector = np.asarray(vector, dtype=np.float64).reshape(-1)
        if vector.shape != self._vectors[slot].shape:
            raise ValueError(
                f"Slot {slot} holds a vector of dimension {self._vectors[slot].shape[0]}, got {vector.shape[0]}"
            )
        self._vectors[slot] = vector

    def __len__(self) -> int:
        return len(self._vectors)

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self._vectors)

    def dims(self) -> List[int]:
        return [v.shape[0] for v in self._vectors]

    def vector(self) -> np.ndarray:
        if not self._vectors:
            return np.zeros(0)
        return np.concatenate(self._vectors)

    def copy(self) -> "VectorValues":
        return VectorValues([v.copy() for v in self._vectors])

    def equals(self, other: "VectorValues", tol: float = 1e-9) -> bool:
        if self.dims() != other.dims():
            return False
        return all(np.allclose(a, b, atol=tol, rtol=0.0) for a, b in zip(self, other))


class Permuted:
    """Index-addressed view ``index -> container[permutation[index]]``."""

    def __init__(self, permutation: Permutation, container: VectorValues) -> None:
        if len(permutation) != len(container):
            raise ValueError("Permutation and container sizes differ")
        self.permutation = permutation
        self.container = container

    @classmethod
    def empty(cls) -> "Permuted":
        return cls(Permutation(), VectorValues())

    def __getitem__(self, index: int) -> np.ndarray:
        return self.container[self.permutation[index]]

    def __setitem__(self, index: int, vector) -> None:
        self.container[self.permutation[index]] = vector

    def __len__(self) -> int:
        return len(self.permutation)

    def push_back(self, vector) -> int:
        """Store a new vector in a fresh slot, reachable at the next trailing index."""
        slot = self.container.append(vector)
        self.permutation.append(slot)
        return len(self.permutation) - 1

    def permute_with_inverse(self, inverse: Sequence[int]) -> None:
        """
        Relabel indices (``new = inverse[old]``) without moving any slot:
        after the call ``self[inverse[i]]`` is what ``self[i]`` was before.
        """
        if len(inverse) != len(self.permutation):
            raise ValueError("Inverse permutation size does not match")
        composed = [0] * len(self.permutation)
        for old, slot in enumerate(self.permutation):
            composed[inverse[old]] = slot
        self.permutation = Permutation(composed)

    def as_dict(self) -> Dict[int, np.ndarray]:
        return {i: self[i] for i in range(len(self))}

    def copy(self) -> "Permuted":
        return Permuted(self.permutation.copy(), self.container.copy())
