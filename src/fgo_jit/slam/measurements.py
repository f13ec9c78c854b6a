# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Generic measurement factors for FGO-JIT.

These are the two factor shapes almost every estimation problem needs,
written once for any ``slam.manifold`` type:

    • ``PriorFactor(key, prior, noise)``:
        Anchors a variable to a known value.
            r = prior.local_coordinates(x)

    • ``BetweenFactor(key1, key2, measured, noise)``:
        Relative measurement between two variables of the same Lie group
        (odometry, loop closures, relative landmark offsets).
            r = measured.local_coordinates(x1⁻¹ ∘ x2)

Both residuals live in the tangent space of the variable type (ℝ³ for
Pose2, ℝ⁶ for Pose3, ℝⁿ for vectors), so the noise model dimension equals
the variable dimension.

Sensor-specific factors (camera projection, range, bearing) are not part of
the library; write them by subclassing ``core.factors.NoiseModelFactor``:

    1. Store the measurement in ``__init__``.
    2. Implement ``evaluate_error(*xs)`` on the raw arrays.
    3. Let autodiff provide the Jacobians.
"""

from __future__ import annotations

from typing import Optional

import jax.numpy as jnp

from ..core.factors import NoiseModelFactor
from ..core.noise_model import Gaussian
from ..core.types import Key
from .manifold import LieGroup, Manifold


class PriorFactor(NoiseModelFactor):
    """Unary prior: x ≈ prior."""

    def __init__(self, key: Key, prior: Manifold, noise_model: Optional[Gaussian] = None) -> None:
        super().__init__((key,), noise_model)
        self.prior = prior

    def evaluate_error(self, x: jnp.ndarray) -> jnp.ndarray:
        return type(self.prior).local_array(self.prior.value, x)

    def __repr__(self) -> str:
        return f"PriorFactor({self.keys[0]}, {self.prior!r})"


class BetweenFactor(NoiseModelFactor):
    """Binary relative constraint: x1⁻¹ ∘ x2 ≈ measured."""

    def __init__(
        self,
        key1: Key,
        key2: Key,
        measured: LieGroup,
        noise_model: Optional[Gaussian] = None,
    ) -> None:
        if not isinstance(measured, LieGroup):
            raise ValueError(
                f"BetweenFactor needs a Lie group measurement, got {type(measured).__name__}"
            )
        super().__init__((key1, key2), noise_model)
        self.measured = measured

    def evaluate_error(self, x1: jnp.ndarray, x2: jnp.ndarray) -> jnp.ndarray:
        group = type(self.measured)
        return group.local_array(self.measured.value, group.between_array(x1, x2))

    def __repr__(self) -> str:
        return f"BetweenFactor({self.keys[0]}, {self.keys[1]}, {self.measured!r})"
