# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Nonlinear factor graph for FGO-JIT.

The ``FactorGraph`` is an ordered, append-only list of factors. It is the
problem definition the optimizers work on:

    error(values)
        Σ_i factor_i.error(values), summed in graph order.

    linearize(values)
        One JacobianFactor per factor, in graph order, as a
        ``GaussianFactorGraph``. This is the first half of every
        Gauss-Newton / Levenberg-Marquardt iteration.

Null factors
------------
``None`` may be pushed into the graph as a placeholder. It contributes zero
error, produces no linear factor and has no keys, so graphs that reserve
slots for factors that are filled in later behave exactly like graphs
without those slots.

Parallel evaluation
-------------------
Factors read the ``Values`` and share nothing else, so ``error`` and
``linearize`` can fan out over a ``ThreadPoolExecutor`` (``max_workers``).
Results are collected with ``executor.map``, which preserves graph order,
so the error sum and the layout of the linear system do not depend on which
factor finished first.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Iterator, List, Optional, TypeVar

from loguru import logger

from .factors import Factor
from .types import Key
from .values import Values
from ..linear.gaussian import GaussianFactorGraph
from ..linear.ordering import Ordering

T = TypeVar("T")


class FactorGraph:
    """Ordered collection of (possibly null) nonlinear factors."""

    def __init__(self, factors: Optional[Iterable[Optional[Factor]]] = None) -> None:
        self.factors: List[Optional[Factor]] = []
        if factors is not None:
            self.extend(factors)

    def push_back(self, factor: Optional[Factor]) -> None:
        if factor is not None and not isinstance(factor, Factor):
            raise ValueError(f"Expected a Factor or None, got {type(factor).__name__}")
        self.factors.append(factor)

    add_factor = push_back
    add = push_back

    def extend(self, factors: Iterable[Optional[Factor]]) -> None:
        for f in factors:
            self.push_back(f)

    def __iter__(self) -> Iterator[Optional[Factor]]:
        return iter(self.factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __getitem__(self, i: int) -> Optional[Factor]:
        return self.factors[i]

    def size(self) -> int:
        return len(self.factors)

    def nr_factors(self) -> int:
        """Number of non-null factors."""
        return sum(1 for f in self.factors if f is not None)

    def keys(self) -> List[Key]:
        return sorted({key for f in self.factors if f is not None for key in f.keys})

    # --- Evaluation ---

    def _map(self, fn: Callable[[Factor], T], max_workers: Optional[int]) -> List[T]:
        factors = [f for f in self.factors if f is not None]
        if max_workers is not None and max_workers > 1 and len(factors) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                return list(executor.map(fn, factors))
        return [fn(f) for f in factors]

    def error(self, values: Values, max_workers: Optional[int] = None) -> float:
        return float(sum(self._map(lambda f: f.error(values), max_workers)))

    def linearize(self, values: Values, max_workers: Optional[int] = None) -> GaussianFactorGraph:
        linear = GaussianFactorGraph(self._map(lambda f: f.linearize(values), max_workers))
        logger.debug(
            "Linearized {} factors over {} variables",
            len(linear),
            len(linear.dims()),
        )
        return linear

    def ordering(self, values: Optional[Values] = None, ordering_type: str = "MIN_DEGREE") -> Ordering:
        """
        Elimination ordering over the graph's keys (plus any extra keys in
        ``values``, which end up unconstrained).
        """
        extra = values.keys() if values is not None else ()
        return Ordering.create(self.factors, ordering_type, extra)

    def __repr__(self) -> str:
        return f"FactorGraph({self.nr_factors()} factors, {len(self.factors)} slots)"
