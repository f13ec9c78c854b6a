# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Nonlinear factors for FGO-JIT.

A factor is one residual term over a small, ordered set of variables (its
scope). The optimizer only needs two things from it:

    error(values)      -> ½ ‖whitened residual‖²   (a non-negative float)
    linearize(values)  -> JacobianFactor            (whitened Jacobians, −residual)

Classes
-------
Factor
    Abstract interface. Implement it directly for factors that are not of
    the "noise model over a residual" form.

NoiseModelFactor
    The usual case. Subclasses implement

        evaluate_error(*xs) -> r

    where ``xs`` are the raw array payloads of the scope variables, in
    ``keys`` order, and ``r`` is the unwhitened residual. Jacobians are
    obtained with ``jax.jacfwd`` by differentiating

        δ ↦ evaluate_error(retract(x_1, δ_1), ..., retract(x_n, δ_n))

    at δ = 0, i.e. with respect to each variable's local tangent
    coordinates, so they are consistent with ``Values.retract``.

ResidualFactor
    Wraps a plain residual function ``fn(*xs, **params)``, mirroring the
    register-a-residual style of building graphs from functions.

Notes
-----
Factors are stateless with respect to the estimate: every method is a pure
function of the ``Values`` passed in. Referencing a key the ``Values`` does
not hold raises ``MissingVariable``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp

from .noise_model import Gaussian, Unit
from .types import Key
from .values import Values
from ..linear.gaussian import JacobianFactor


class Factor(ABC):
    """Residual term over an ordered scope of keys."""

    def __init__(self, keys: Sequence[Key]) -> None:
        keys = tuple(keys)
        if len(set(keys)) != len(keys):
            raise ValueError(f"Factor scope has duplicate keys: {keys}")
        self.keys: Tuple[Key, ...] = keys

    def scope(self) -> Tuple[Key, ...]:
        return self.keys

    def size(self) -> int:
        return len(self.keys)

    @abstractmethod
    def error(self, values: Values) -> float:
        ...

    @abstractmethod
    def linearize(self, values: Values) -> JacobianFactor:
        ...

    def __repr__(self) -> str:
        ks = ", ".join(str(k) for k in self.keys)
        return f"{type(self).__name__}({ks})"


class NoiseModelFactor(Factor):
    """Factor whose error is ½‖noise_model.whiten(evaluate_error(x))‖²."""

    def __init__(self, keys: Sequence[Key], noise_model: Optional[Gaussian] = None) -> None:
        super().__init__(keys)
        self.noise_model = noise_model

    @abstractmethod
    def evaluate_error(self, *xs: jnp.ndarray) -> jnp.ndarray:
        """Unwhitened residual from the variables' array payloads."""

    def _gather(self, values: Values) -> Tuple[List[Any], List[jnp.ndarray]]:
        variables = [values.at(key) for key in self.keys]
        return variables, [v.value for v in variables]

    def _noise(self, r: jnp.ndarray) -> Gaussian:
        if self.noise_model is None:
            return Unit(r.shape[0])
        if self.noise_model.dim != r.shape[0]:
            raise ValueError(
                f"{type(self).__name__} residual has dimension {r.shape[0]} "
                f"but its noise model has dimension {self.noise_model.dim}"
            )
        return self.noise_model

    def unwhitened_error(self, values: Values) -> jnp.ndarray:
        _, xs = self._gather(values)
        return jnp.reshape(self.evaluate_error(*xs), (-1,))

    def whitened_error(self, values: Values) -> jnp.ndarray:
        r = self.unwhitened_error(values)
        return self._noise(r).whiten(r)

    def error(self, values: Values) -> float:
        w = self.whitened_error(values)
        return 0.5 * float(jnp.dot(w, w))

    def jacobians(self, values: Values) -> Tuple[jnp.ndarray, List[jnp.ndarray]]:
        """Unwhitened residual and per-key Jacobians in local coordinates."""
        variables, xs = self._gather(values)
        retracts = [type(v).retract_array for v in variables]

        def local_error(*deltas: jnp.ndarray) -> jnp.ndarray:
            moved = [retract(x, d) for retract, x, d in zip(retracts, xs, deltas)]
            return jnp.reshape(self.evaluate_error(*moved), (-1,))

        r = jnp.reshape(self.evaluate_error(*xs), (-1,))
        zeros = [jnp.zeros(v.dim) for v in variables]
        Js = jax.jacfwd(local_error, argnums=tuple(range(len(zeros))))(*zeros)
        return r, list(Js)

    def linearize(self, values: Values) -> JacobianFactor:
        r, Js = self.jacobians(values)
        noise = self._noise(r)
        blocks = [noise.whiten_jacobian(J) for J in Js]
        return JacobianFactor(self.keys, blocks, -noise.whiten(r))


class ResidualFactor(NoiseModelFactor):
    """
    Factor built from a residual function.

        f = ResidualFactor((x1, x2), lambda a, b: b - a - 1.0, Isotropic.from_sigma(1, 0.1))
    """

    def __init__(
        self,
        keys: Sequence[Key],
        residual_fn: Callable[..., jnp.ndarray],
        noise_model: Optional[Gaussian] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(keys, noise_model)
        self.residual_fn = residual_fn
        self.params = dict(params) if params else {}

    def evaluate_error(self, *xs: jnp.ndarray) -> jnp.ndarray:
        return self.residual_fn(*xs, **self.params)
