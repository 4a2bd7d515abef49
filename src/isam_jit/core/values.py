# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Variable values: the nonlinear estimate (or linearization point).

`Values` is an insertion-ordered map ``Key -> np.ndarray`` that also
remembers each variable's type, which selects its manifold update rule and
its relinearization threshold.
"""

from __future__ import annotations

from typing import Dict, Iterator, Mapping, Tuple

import numpy as np

from isam_jit.core.jax_init import jax, jnp
from isam_jit.core.types import Key, EUCLIDEAN
from isam_jit.slam.manifold import retract as manifold_retract

_retract_jit = jax.jit(manifold_retract, static_argnums=0)


class Values:
    """Insertion-ordered collection of typed variable values."""

    def __init__(self) -> None:
        self._values: Dict[Key, np.ndarray] = {}
        self._types: Dict[Key, str] = {}

    def insert(self, key: Key, value, var_type: str = EUCLIDEAN) -> None:
        if key in self._values:
            raise ValueError(f"Key {key} already exists in the values")
        self._values[key] = np.asarray(value, dtype=np.float64).reshape(-1)
        self._types[key] = var_type

    def update(self, key: Key, value) -> None:
        if key not in self._values:
            raise KeyError(key)
        self._values[key] = np.asarray(value, dtype=np.float64).reshape(-1)

    def insert_values(self, other: "Values") -> None:
        for key, value in other.items():
            self.insert(key, value, other.var_type(key))

    def __getitem__(self, key: Key) -> np.ndarray:
        return self._values[key]

    def __contains__(self, key) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[Key]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def keys(self):
        return self._values.keys()

    def items(self):
        return self._values.items()

    def var_type(self, key: Key) -> str:
        return self._types[key]

    def dim(self, key: Key) -> int:
        return self._values[key].shape[0]

    def retract_key(self, key: Key, delta) -> np.ndarray:
        """Return the value of ``key`` moved by the local update ``delta``."""
        out = _retract_jit(self._types[key], jnp.asarray(self._values[key]), jnp.asarray(delta))
        return np.asarray(out, dtype=np.float64)

    def retract(self, delta: Mapping[Key, np.ndarray]) -> "Values":
        """
        Apply local updates to every key present in ``delta`` and return new
        values. Keys without an entry in ``delta`` are copied unchanged.
        """
        out = Values()
        for key, value in self._values.items():
            d = delta.get(key)
            if d is None or not np.any(d):
                out.insert(key, value, self._types[key])
            else:
                out.insert(key, self.retract_key(key, d), self._types[key])
        return out

    def copy(self) -> "Values":
        out = Values()
        out._values = dict(self._values)
        out._types = dict(self._types)
        return out

    def equals(self, other: "Values", tol: float = 1e-9) -> bool:
        if set(self.keys()) != set(other.keys()):
            return False
        for key, value in self.items():
            if self._types[key] != other.var_type(key):
                return False
            if not np.allclose(value, other[key], atol=tol, rtol=0.0):
                return False
        return True

    def as_tuple(self, key: Key) -> Tuple[float, ...]:
        return tuple(float(v) for v in self._values[key])

    def __repr__(self) -> str:
        body = ", ".join(f"{k}: {self._types[k]}{np.round(v, 4).tolist()}" for k, v in self.items())
        return f"Values({{{body}}})"
