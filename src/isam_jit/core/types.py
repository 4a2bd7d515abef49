# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Core typed identifiers for ISAM-JIT.

Three kinds of integers flow through the smoother and they must not be
confused:

Key
    Stable user-facing identifier of a variable (a pose, a landmark). Keys
    never change once a variable is created.

Index
    Position of a variable in the current elimination ordering. Indices are
    relabelled every time the affected part of the problem is reordered, and
    every linear structure (Jacobian/Hessian factors, conditionals, delta
    containers) is addressed by them.

FactorIndex
    Slot of a nonlinear factor in the factor graph. Slots are append-only;
    a removed factor leaves an empty slot behind so that indices handed out
    to callers stay valid.

Variable types are plain strings (``"pose2"``, ``"point2"``, ...) mapped to
manifold update rules in :mod:`isam_jit.slam.manifold`.
"""

from __future__ import annotations
from typing import NewType

Key = NewType("Key", int)
Index = NewType("Index", int)
FactorIndex = NewType("FactorIndex", int)

POSE2 = "pose2"
POINT2 = "point2"
EUCLIDEAN = "euclidean"
