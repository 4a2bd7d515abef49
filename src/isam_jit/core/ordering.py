# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Variable ordering and index permutations.

Ordering
    Bijection between live variable keys and elimination indices
    ``0 .. n-1``. New variables are appended with trailing indices.

Permutation
    A list of indices. Two readings are used throughout the code base:

    * as an *inverse* permutation handed to ``permute_with_inverse``:
      ``inverse[old_index] == new_index``;
    * inside :class:`isam_jit.linear.vector_values.Permuted`:
      ``permutation[index] == storage slot``.

Every index-addressed structure in the smoother (ordering, delta
containers, conditionals and cached factors in the Bayes tree) exposes
``permute_with_inverse`` so a reordering can be applied to all of them
consistently.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Sequence

from isam_jit.core.types import Key, Index


class Permutation:
    """Dense integer permutation ``i -> self[i]``."""

    def __init__(self, indices: Iterable[int] = ()) -> None:
        self._indices: List[int] = [int(i) for i in indices]

    @classmethod
    def identity(cls, n: int) -> "Permutation":
        return cls(range(n))

    def __getitem__(self, i: int) -> int:
        return self._indices[i]

    def __setitem__(self, i: int, value: int) -> None:
        self._indices[i] = int(value)

    def __len__(self) -> int:
        return len(self._indices)

    def __iter__(self) -> Iterator[int]:
        return iter(self._indices)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Permutation):
            return NotImplemented
        return self._indices == other._indices

    def append(self, value: int) -> None:
        self._indices.append(int(value))

    def inverse(self) -> "Permutation":
        inv = [0] * len(self._indices)
        for i, j in enumerate(self._indices):
            inv[j] = i
        return Permutation(inv)

    def is_bijection(self) -> bool:
        return sorted(self._indices) == list(range(len(self._indices)))

    def copy(self) -> "Permutation":
        return Permutation(self._indices)

    def __repr__(self) -> str:
        return f"Permutation({self._indices})"


class Ordering:
    """Key <-> index map over the live variables."""

    def __init__(self, keys: Iterable[Key] = ()) -> None:
        self._key_to_index: Dict[Key, Index] = {}
        self._index_to_key: List[Key] = []
        for key in keys:
            self.push_back(key)

    def push_back(self, key: Key) -> Index:
        if key in self._key_to_index:
            raise ValueError(f"Key {key} is already in the ordering")
        index = Index(len(self._index_to_key))
        self._key_to_index[key] = index
        self._index_to_key.append(key)
        return index

    def __getitem__(self, key: Key) -> Index:
        return self._key_to_index[key]

    def key(self, index: Index) -> Key:
        return self._index_to_key[index]

    def __contains__(self, key) -> bool:
        return key in self._key_to_index

    def __len__(self) -> int:
        return len(self._index_to_key)

    def __iter__(self) -> Iterator[Key]:
        """Keys in index order."""
        return iter(self._index_to_key)

    def keys(self) -> List[Key]:
        return list(self._index_to_key)

    def items(self):
        return self._key_to_index.items()

    def indices(self, keys: Iterable[Key]) -> List[Index]:
        return [self._key_to_index[k] for k in keys]

    def permute_with_inverse(self, inverse: Sequence[int]) -> None:
        """Relabel every key: ``new_index = inverse[old_index]``."""
        if len(inverse) != len(self._index_to_key):
            raise ValueError(
                f"Permutation of size {len(inverse)} does not match ordering of size {len(self)}"
            )
        index_to_key: List[Key] = [None] * len(self._index_to_key)  # type: ignore[list-item]
        for key, old in self._key_to_index.items():
            new = Index(inverse[old])
            self._key_to_index[key] = new
            index_to_key[new] = key
        self._index_to_key = index_to_key

    def copy(self) -> "Ordering":
        out = Ordering()
        out._key_to_index = dict(self._key_to_index)
        out._index_to_key = list(self._index_to_key)
        return out

    def __eq__(self, other) -> bool:
        if not isinstance(other, Ordering):
            return NotImplemented
        return self._index_to_key == other._index_to_key

    def __repr__(self) -> str:
        return f"Ordering({self._index_to_key})"
