# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Gaussian noise models for FGO-JIT.

A noise model turns a raw residual r into a *whitened* residual

    w = sqrt_info @ r,       sqrt_info^T sqrt_info = Σ⁻¹

so that the factor error is ``0.5 * ||w||²`` (half the squared Mahalanobis
distance) and linearized Jacobians can be stacked without further scaling.

Classes
-------
Gaussian
    Full square-root information matrix. Construct with
    ``Gaussian.from_covariance``, ``Gaussian.from_information`` or
    ``Gaussian.from_sqrt_information``.

Diagonal
    Independent components: ``Diagonal.from_sigmas([...])`` or
    ``Diagonal.from_precisions([...])``.

Isotropic
    One sigma for all components: ``Isotropic.from_sigma(dim, sigma)``.

Unit
    Identity whitening: ``Unit(dim)``.

Notes
-----
Covariances must be symmetric positive definite; a non-SPD matrix is
rejected at construction with ``ValueError`` rather than surfacing later as
a rank deficiency.
"""

from __future__ import annotations

from typing import Sequence, Union

import jax.numpy as jnp

ArrayLike = Union[jnp.ndarray, Sequence[float], float]


class Gaussian:
    """Noise model defined by an upper-triangular square-root information matrix."""

    def __init__(self, sqrt_info: jnp.ndarray) -> None:
        sqrt_info = jnp.asarray(sqrt_info, dtype=jnp.float64)
        if sqrt_info.ndim != 2 or sqrt_info.shape[0] != sqrt_info.shape[1]:
            raise ValueError(f"sqrt_info must be square, got shape {sqrt_info.shape}")
        self.sqrt_info = sqrt_info

    @property
    def dim(self) -> int:
        return int(self.sqrt_info.shape[0])

    @classmethod
    def from_sqrt_information(cls, R: jnp.ndarray) -> "Gaussian":
        return cls(R)

    @classmethod
    def from_information(cls, info: jnp.ndarray) -> "Gaussian":
        info = jnp.asarray(info, dtype=jnp.float64)
        L = jnp.linalg.cholesky(info)
        if not bool(jnp.all(jnp.isfinite(L))):
            raise ValueError("Information matrix is not symmetric positive definite")
        return cls(L.T)

    @classmethod
    def from_covariance(cls, cov: jnp.ndarray) -> "Gaussian":
        cov = jnp.asarray(cov, dtype=jnp.float64)
        if not bool(jnp.all(jnp.isfinite(jnp.linalg.cholesky(cov)))):
            raise ValueError("Covariance matrix is not symmetric positive definite")
        return cls.from_information(jnp.linalg.inv(cov))

    def whiten(self, r: jnp.ndarray) -> jnp.ndarray:
        return self.sqrt_info @ r

    def whiten_jacobian(self, H: jnp.ndarray) -> jnp.ndarray:
        return self.sqrt_info @ H

    def distance(self, r: jnp.ndarray) -> jnp.ndarray:
        """Squared Mahalanobis distance ||whiten(r)||²."""
        w = self.whiten(r)
        return jnp.dot(w, w)

    def covariance(self) -> jnp.ndarray:
        Rinv = jnp.linalg.inv(self.sqrt_info)
        return Rinv @ Rinv.T

    def __repr__(self) -> str:
        return f"{type(self).__name__}(dim={self.dim})"


class Diagonal(Gaussian):
    """Diagonal noise model; whitening is an elementwise scale."""

    def __init__(self, inv_sigmas: ArrayLike) -> None:
        inv_sigmas = jnp.asarray(inv_sigmas, dtype=jnp.float64).reshape(-1)
        if not bool(jnp.all(inv_sigmas > 0.0)):
            raise ValueError("Diagonal noise model needs strictly positive sigmas")
        self.inv_sigmas = inv_sigmas
        super().__init__(jnp.diag(inv_sigmas))

    @classmethod
    def from_sigmas(cls, sigmas: ArrayLike) -> "Diagonal":
        return cls(1.0 / jnp.asarray(sigmas, dtype=jnp.float64))

    @classmethod
    def from_precisions(cls, precisions: ArrayLike) -> "Diagonal":
        return cls(jnp.sqrt(jnp.asarray(precisions, dtype=jnp.float64)))

    @property
    def sigmas(self) -> jnp.ndarray:
        return 1.0 / self.inv_sigmas

    def whiten(self, r: jnp.ndarray) -> jnp.ndarray:
        return self.inv_sigmas * r

    def whiten_jacobian(self, H: jnp.ndarray) -> jnp.ndarray:
        return self.inv_sigmas[:, None] * H


class Isotropic(Diagonal):
    """Same sigma on every component."""

    @classmethod
    def from_sigma(cls, dim: int, sigma: float) -> "Isotropic":
        return cls(jnp.full((dim,), 1.0 / float(sigma)))


class Unit(Isotropic):
    """Identity noise model."""

    def __init__(self, dim: int) -> None:
        super().__init__(jnp.ones((dim,)))

    def whiten(self, r: jnp.ndarray) -> jnp.ndarray:
        return r

    def whiten_jacobian(self, H: jnp.ndarray) -> jnp.ndarray:
        return H
