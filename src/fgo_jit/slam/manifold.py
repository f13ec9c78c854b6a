# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Manifold-valued variables for FGO-JIT.

This module centralizes the *geometric* side of optimization: every variable
in a ``Values`` is an instance of a ``Manifold`` subclass, and the optimizer
only ever touches it through two operations:

    • ``retract(delta)``          : move on the manifold by a tangent vector
    • ``local_coordinates(other)`` : tangent vector from self to other

with the consistency requirement

    x.retract(x.local_coordinates(y)) == y
    x.local_coordinates(x.retract(d)) == d       (for small d)

Both operations are backed by *pure array functions* (``retract_array`` and
``local_array``) written in ``jax.numpy``. Factors differentiate through
``retract_array`` with ``jax.jacfwd`` to obtain Jacobians in each variable's
local tangent space, so a new variable type needs no hand-written Jacobians.

Reference types
---------------
Vector, Point2, Point3
    Euclidean: retract is addition.

Pose2
    SE(2) stored as [x, y, theta]; perturbations are applied in the body
    frame: x ⊕ d = x ∘ d.

Pose3
    SE(3) stored as [tx, ty, tz, wx, wy, wz]; perturbations are applied in the
    body frame with decoupled rotation: R' = R Exp(dw), t' = t + R dt. The
    matching local coordinates are exactly ``relative_pose_se3``.

Pose2, Pose3 and the vector types are Lie groups and also provide
``compose``, ``between``, ``inverse`` and ``identity``, which
``slam.measurements.BetweenFactor`` relies on.

Adding a manifold
-----------------
Subclass ``Manifold`` and implement ``retract_array`` and ``local_array``
as static methods operating on the flat array payload. Override ``dim`` if
the payload length differs from the tangent dimension.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import jax.numpy as jnp

from ..core.math3d import (
    compose_pose_se2,
    compose_pose_se3,
    inverse_pose_se2,
    inverse_pose_se3,
    matrix_to_pose_se3,
    pose_se3_to_matrix,
    relative_pose_se2,
    relative_pose_se3,
    wrap_angle,
)


def _coerce(args: tuple, size: int | None = None) -> jnp.ndarray:
    if len(args) == 1:
        value = jnp.asarray(args[0], dtype=jnp.float64).reshape(-1)
    else:
        value = jnp.asarray(args, dtype=jnp.float64)
    if size is not None and value.shape[0] != size:
        raise ValueError(f"Expected {size} components, got {value.shape[0]}")
    return value


class Manifold(ABC):
    """A variable value living on a smooth manifold."""

    def __init__(self, *args: Any) -> None:
        self.value = _coerce(args)

    @property
    def dim(self) -> int:
        """Intrinsic (tangent) dimension."""
        return int(self.value.shape[0])

    @staticmethod
    @abstractmethod
    def retract_array(x: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
        ...

    @staticmethod
    @abstractmethod
    def local_array(x: jnp.ndarray, y: jnp.ndarray) -> jnp.ndarray:
        ...

    @classmethod
    def from_array(cls, value: jnp.ndarray) -> "Manifold":
        return cls(value)

    def retract(self, delta: jnp.ndarray) -> "Manifold":
        delta = jnp.asarray(delta, dtype=jnp.float64).reshape(-1)
        if delta.shape[0] != self.dim:
            raise ValueError(
                f"{type(self).__name__}.retract expects a {self.dim}-vector, "
                f"got {delta.shape[0]}"
            )
        return self.from_array(self.retract_array(self.value, delta))

    def local_coordinates(self, other: "Manifold") -> jnp.ndarray:
        if type(other) is not type(self):
            raise ValueError(
                f"Cannot take local coordinates between {type(self).__name__} "
                f"and {type(other).__name__}"
            )
        return self.local_array(self.value, other.value)

    def equals(self, other: Any, tol: float = 1e-9) -> bool:
        if type(other) is not type(self) or other.dim != self.dim:
            return False
        return bool(jnp.all(jnp.abs(self.local_coordinates(other)) <= tol))

    def vector(self) -> jnp.ndarray:
        return self.value

    def __repr__(self) -> str:
        vals = ", ".join(f"{float(v):.6g}" for v in self.value)
        return f"{type(self).__name__}({vals})"


class LieGroup(Manifold):
    """Manifold with a group structure (compose / between / inverse)."""

    @staticmethod
    @abstractmethod
    def compose_array(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
        ...

    @staticmethod
    @abstractmethod
    def between_array(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
        ...

    @staticmethod
    @abstractmethod
    def inverse_array(a: jnp.ndarray) -> jnp.ndarray:
        ...

    def compose(self, other: "LieGroup") -> "LieGroup":
        return self.from_array(self.compose_array(self.value, other.value))

    def between(self, other: "LieGroup") -> "LieGroup":
        """self⁻¹ ∘ other"""
        return self.from_array(self.between_array(self.value, other.value))

    def inverse(self) -> "LieGroup":
        return self.from_array(self.inverse_array(self.value))


class Vector(LieGroup):
    """Euclidean vector of any length."""

    @staticmethod
    def retract_array(x, delta):
        return x + delta

    @staticmethod
    def local_array(x, y):
        return y - x

    @staticmethod
    def compose_array(a, b):
        return a + b

    @staticmethod
    def between_array(a, b):
        return b - a

    @staticmethod
    def inverse_array(a):
        return -a

    @classmethod
    def identity(cls, dim: int) -> "Vector":
        return cls(jnp.zeros(dim))


class Point2(Vector):
    """Planar point. ``Point2(x, y)`` or ``Point2([x, y])``."""

    def __init__(self, *args: Any) -> None:
        self.value = _coerce(args or (0.0, 0.0), 2)

    @classmethod
    def identity(cls, dim: int = 2) -> "Point2":
        return cls(0.0, 0.0)

    @property
    def x(self) -> float:
        return float(self.value[0])

    @property
    def y(self) -> float:
        return float(self.value[1])


class Point3(Vector):
    """Spatial point. ``Point3(x, y, z)`` or ``Point3([x, y, z])``."""

    def __init__(self, *args: Any) -> None:
        self.value = _coerce(args or (0.0, 0.0, 0.0), 3)

    @classmethod
    def identity(cls, dim: int = 3) -> "Point3":
        return cls(0.0, 0.0, 0.0)


class Pose2(LieGroup):
    """SE(2) pose ``[x, y, theta]``; the angle is kept wrapped to (-pi, pi]."""

    def __init__(self, *args: Any) -> None:
        value = _coerce(args or (0.0, 0.0, 0.0), 3)
        self.value = value.at[2].set(wrap_angle(value[2]))

    @staticmethod
    def retract_array(x, delta):
        return compose_pose_se2(x, delta)

    @staticmethod
    def local_array(x, y):
        return relative_pose_se2(x, y)

    @staticmethod
    def compose_array(a, b):
        return compose_pose_se2(a, b)

    @staticmethod
    def between_array(a, b):
        return relative_pose_se2(a, b)

    @staticmethod
    def inverse_array(a):
        return inverse_pose_se2(a)

    @classmethod
    def identity(cls) -> "Pose2":
        return cls(0.0, 0.0, 0.0)

    @property
    def x(self) -> float:
        return float(self.value[0])

    @property
    def y(self) -> float:
        return float(self.value[1])

    @property
    def theta(self) -> float:
        return float(self.value[2])


class Pose3(LieGroup):
    """SE(3) pose ``[tx, ty, tz, wx, wy, wz]`` (translation, rotation vector)."""

    def __init__(self, *args: Any) -> None:
        self.value = _coerce(args or (0.0,) * 6, 6)

    @staticmethod
    def retract_array(x, delta):
        return compose_pose_se3(x, delta)

    @staticmethod
    def local_array(x, y):
        return relative_pose_se3(x, y)

    @staticmethod
    def compose_array(a, b):
        return compose_pose_se3(a, b)

    @staticmethod
    def between_array(a, b):
        return relative_pose_se3(a, b)

    @staticmethod
    def inverse_array(a):
        return inverse_pose_se3(a)

    @classmethod
    def identity(cls) -> "Pose3":
        return cls(jnp.zeros(6))

    @classmethod
    def from_matrix(cls, T: jnp.ndarray) -> "Pose3":
        return cls(matrix_to_pose_se3(T))

    def matrix(self) -> jnp.ndarray:
        return pose_se3_to_matrix(self.value)

    @property
    def translation(self) -> jnp.ndarray:
        return self.value[:3]

    @property
    def rotation_vector(self) -> jnp.ndarray:
        return self.value[3:]
