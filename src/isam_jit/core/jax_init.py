# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Common JAX initialization for ISAM-JIT.

JAX is configured once, at import time, for 64-bit floats. Elimination and
back-substitution compare incremental and batch solutions to 1e-4, which
single precision linearization cannot guarantee.

Usage:
    from isam_jit.core.jax_init import jax, jnp
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

__all__ = ["jax", "jnp"]
