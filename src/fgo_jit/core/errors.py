# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Failure taxonomy for FGO-JIT.

Three things can go wrong while optimizing a factor graph:

MissingVariable
    A factor references a key that is not in the ``Values`` it is evaluated
    against. The graph is malformed relative to the estimate; nothing in the
    optimizer can fix that.

RankDeficiency
    Elimination met a frontal variable whose local system is singular: the
    variable is unobservable or under-constrained given the factors (and any
    damping) present.

NoProgress
    Levenberg-Marquardt could not find an error-decreasing step before the
    damping saturated or the inner retry budget ran out.

All three carry the offending key(s) and, once the optimizer has seen them,
the iteration index. Low-level code (``Values``, factors, elimination)
raises them; the optimizers catch them and turn them into ``Failure`` records
on the returned state (see ``optimization.solvers``).
"""

from __future__ import annotations
from typing import Iterable, Optional, Tuple

from .types import Key, format_keys


class FactorGraphError(Exception):
    """Base class for structured optimization failures."""

    def __init__(
        self,
        message: str,
        keys: Iterable[Key] = (),
        iteration: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.keys: Tuple[Key, ...] = tuple(keys)
        self.iteration = iteration

    def at_iteration(self, iteration: int) -> "FactorGraphError":
        self.iteration = iteration
        return self

    def __str__(self) -> str:
        text = self.message
        if self.iteration is not None:
            text = f"{text} (iteration {self.iteration})"
        return text


class MissingVariable(FactorGraphError, KeyError):
    """A key was requested that the Values does not contain."""

    def __init__(self, key: Key, iteration: Optional[int] = None) -> None:
        super().__init__(f"Variable {key} is not in the Values", (key,), iteration)

    @property
    def key(self) -> Key:
        return self.keys[0]

    # KeyError.__str__ would repr() the message.
    __str__ = FactorGraphError.__str__


class RankDeficiency(FactorGraphError):
    """Elimination found a singular frontal block."""

    def __init__(self, keys: Iterable[Key], iteration: Optional[int] = None) -> None:
        keys = tuple(keys)
        super().__init__(
            f"Linear system is rank deficient at variable(s) {format_keys(keys)}",
            keys,
            iteration,
        )


class NoProgress(FactorGraphError):
    """Damped optimization exhausted lambda growth without an accepted step."""

    def __init__(self, iteration: int, lambda_: float, keys: Iterable[Key] = ()) -> None:
        super().__init__(
            f"No error-decreasing step found (lambda={lambda_:.3g})",
            keys,
            iteration,
        )
        self.lambda_ = lambda_
