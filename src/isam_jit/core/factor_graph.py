"""
Nonlinear factor graph for ISAM-JIT.

The graph is the smoother's record of every measurement it has been given.
It stores:
    - Factors in append-only *slots*. Removing a factor empties its slot;
      slots are never reused, so slot numbers handed out to callers stay
      valid for the lifetime of the smoother.
    - A variable index ``Key -> {slot}`` used to find every factor touching
      a set of variables (needed to relinearize the affected region).

A `Factor` is immutable: a factor type label, the keys of the variables it
connects, a JAX residual function and the parameters passed to it. The
residual is expected to be *whitened* already (see
`isam_jit.slam.measurements._apply_weight`), so the factor's error is
``0.5 * ||r||²``.

Primary Methods
---------------
push_back(factor)
    Append a factor, returning its slot.

remove(slot)
    Empty a slot. Raises `InvalidRemovalError` for unknown or empty slots.

factors_touching(keys)
    Slots of every live factor referencing one of the keys.

linearize(values, ordering)
    Jacobian factors over variable *indices*, one per live factor.

error(values)
    Total nonlinear error ``sum_f 0.5 * ||r_f||²``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

import numpy as np

from isam_jit.core.exceptions import InvalidRemovalError, LinearizationError
from isam_jit.core.jax_init import jnp
from isam_jit.core.ordering import Ordering
from isam_jit.core.types import FactorIndex, Key
from isam_jit.core.values import Values
from isam_jit.linear.gaussian import JacobianFactor, split_columns
from isam_jit.optimization.jit_wrappers import get_linearizer, jitted_residual

# Type aliases for clarity
ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]


@dataclass(frozen=True, eq=False)
class Factor:
    """Immutable nonlinear factor connecting variables."""
    type: str          # e.g. "prior_pose2", "between_pose2", "bearing_range"
    keys: Tuple[Key, ...]
    residual_fn: ResidualFn
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", tuple(self.keys))

    def __deepcopy__(self, memo):
        # Immutable; clones of a smoother share their factors.
        return self

    def _stacked(self, values: Values) -> np.ndarray:
        for key in self.keys:
            if key not in values:
                raise LinearizationError(key, self.type)
        return np.concatenate([values[k] for k in self.keys])

    def residual(self, values: Values) -> np.ndarray:
        r = jitted_residual(self.residual_fn)(jnp.asarray(self._stacked(values)), dict(self.params))
        return np.asarray(r, dtype=np.float64).reshape(-1)

    def error(self, values: Values) -> float:
        r = self.residual(values)
        return 0.5 * float(r @ r)

    def linearize(self, values: Values, ordering: Ordering) -> JacobianFactor:
        """
        Whitened Jacobian of the residual with respect to the local update of
        each variable, with ``b = -r``. Columns are addressed by the
        variables' indices in ``ordering``.
        """
        x = self._stacked(values)
        for key in self.keys:
            if key not in ordering:
                raise LinearizationError(key, self.type)
        var_types = tuple(values.var_type(k) for k in self.keys)
        dims = tuple(values.dim(k) for k in self.keys)
        r, J = get_linearizer(self.residual_fn, var_types, dims)(x, dict(self.params))
        return JacobianFactor(ordering.indices(self.keys), split_columns(J, dims), -r)


class FactorGraph:
    """Slot list of nonlinear factors plus a variable index."""

    def __init__(self, factors: Iterable[Factor] = ()) -> None:
        self._slots: List[Optional[Factor]] = []
        self._variable_index: Dict[Key, Set[FactorIndex]] = {}
        for factor in factors:
            self.push_back(factor)

    def push_back(self, factor: Factor) -> FactorIndex:
        slot = FactorIndex(len(self._slots))
        self._slots.append(factor)
        for key in factor.keys:
            self._variable_index.setdefault(key, set()).add(slot)
        return slot

    def check_removable(self, slots: Iterable[int]) -> None:
        """Raise `InvalidRemovalError` if any slot cannot be removed, without removing anything."""
        seen = set()
        for slot in slots:
            if slot in seen or not 0 <= slot < len(self._slots) or self._slots[slot] is None:
                raise InvalidRemovalError(slot)
            seen.add(slot)

    def remove(self, slot: int) -> Factor:
        self.check_removable([slot])
        factor = self._slots[slot]
        self._slots[slot] = None
        for key in factor.keys:
            slots = self._variable_index.get(key)
            if slots is not None:
                slots.discard(slot)
                if not slots:
                    del self._variable_index[key]
        return factor

    def __getitem__(self, slot: int) -> Optional[Factor]:
        return self._slots[slot]

    def __len__(self) -> int:
        """Number of slots, including emptied ones."""
        return len(self._slots)

    def __iter__(self) -> Iterator[Factor]:
        """Live factors in slot order."""
        return (f for f in self._slots if f is not None)

    def live(self) -> Iterator[Tuple[FactorIndex, Factor]]:
        for slot, factor in enumerate(self._slots):
            if factor is not None:
                yield FactorIndex(slot), factor

    def size(self) -> int:
        return sum(1 for f in self._slots if f is not None)

    def keys(self) -> Set[Key]:
        return set(self._variable_index)

    def factors_touching(self, keys: Iterable[Key]) -> List[FactorIndex]:
        out: Set[FactorIndex] = set()
        for key in keys:
            out.update(self._variable_index.get(key, ()))
        return sorted(out)

    def error(self, values: Values) -> float:
        return sum(f.error(values) for f in self)

    def linearize(self, values: Values, ordering: Ordering) -> List[JacobianFactor]:
        return [f.linearize(values, ordering) for f in self]

    def copy(self) -> "FactorGraph":
        out = FactorGraph()
        out._slots = list(self._slots)
        out._variable_index = {k: set(v) for k, v in self._variable_index.items()}
        return out
