# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""Errors raised by the smoother. All of them are fatal to the call that raised them."""

from __future__ import annotations
from typing import Optional


class SmootherError(Exception):
    """Base class for ISAM-JIT errors."""


class LinearizationError(SmootherError, KeyError):
    """A factor references a key that has no value to linearize at."""

    def __init__(self, key, factor_type: Optional[str] = None) -> None:
        self.key = key
        self.factor_type = factor_type
        where = f" by factor '{factor_type}'" if factor_type else ""
        super().__init__(f"Key {key} referenced{where} is not in the values")

    def __str__(self) -> str:
        return self.args[0]


class IndeterminateSystemError(SmootherError, ArithmeticError):
    """Elimination hit a zero or non-positive pivot.

    Usually the problem is under-constrained, e.g. a variable without a prior
    or without enough measurements to fix all of its degrees of freedom.
    """

    def __init__(self, index=None, key=None, detail: str = "") -> None:
        self.index = index
        self.key = key
        msg = "Indeterminant linear system"
        if key is not None:
            msg += f" at variable key {key}"
        if index is not None:
            msg += f" (index {index})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class InvalidRemovalError(SmootherError, IndexError):
    """A factor slot requested for removal does not exist or is already empty."""

    def __init__(self, factor_index) -> None:
        self.factor_index = factor_index
        super().__init__(f"Cannot remove factor {factor_index}: no such factor")
