# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Nonlinear optimizers for FGO-JIT.

Both optimizers iterate the same pipeline on a ``FactorGraph``:

    linearize(values) -> GaussianFactorGraph
    eliminate in the chosen Ordering -> delta (VectorValues)
    values.retract(delta) -> candidate
    graph.error(candidate) -> convergence check

Key Concepts
------------
OptimizerState
    Frozen snapshot of one point of the run: values, error, iteration count,
    status, and (for Levenberg-Marquardt) the damping lambda. ``iterate``
    never mutates a state; it returns the next one. Keep old states around
    to roll back, or pass any state back in to resume from it.

OptimizerStatus
    INITIALIZED -> ITERATING -> CONVERGED | MAX_ITERATIONS | FAILED | NO_PROGRESS

Failure
    Record attached to FAILED / NO_PROGRESS states. It names the failure
    kind, the offending keys and the iteration, and can rebuild the matching
    ``core.errors`` exception. Optimizers never raise for these conditions
    from ``iterate`` or ``run``; only ``optimize`` re-raises on FAILED.

GaussNewtonOptimizer
    Accepts every step.

LevenbergMarquardtOptimizer
    Appends √λ damping factors to the linear system and only accepts a
    candidate whose error does not increase. Rejected candidates grow λ and
    retry at the same linearization point.

Usage
-----
    optimizer = LevenbergMarquardtOptimizer(graph, initial)
    state = optimizer.run()
    if state.status is OptimizerStatus.FAILED:
        print(state.failure.keys)

    values = optimize_lm(graph, initial)
"""

from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

import jax.numpy as jnp
from loguru import logger

from ..core.errors import FactorGraphError, MissingVariable, NoProgress, RankDeficiency
from ..core.factor_graph import FactorGraph
from ..core.types import Key
from ..core.values import Values, VectorValues
from ..linear.gaussian import GaussianFactorGraph
from ..linear.ordering import Ordering
from .params import GaussNewtonParams, LevenbergMarquardtParams


class OptimizerStatus(str, Enum):
    INITIALIZED = "INITIALIZED"
    ITERATING = "ITERATING"
    CONVERGED = "CONVERGED"
    MAX_ITERATIONS = "MAX_ITERATIONS"
    FAILED = "FAILED"
    NO_PROGRESS = "NO_PROGRESS"

    @property
    def terminal(self) -> bool:
        return self not in (OptimizerStatus.INITIALIZED, OptimizerStatus.ITERATING)


@dataclass(frozen=True)
class Failure:
    """Why an optimizer stopped early."""
    kind: str
    keys: Tuple[Key, ...]
    iteration: int
    message: str
    lambda_: Optional[float] = None

    @classmethod
    def from_exception(cls, exc: FactorGraphError, iteration: int) -> "Failure":
        return cls(
            kind=type(exc).__name__,
            keys=tuple(exc.keys),
            iteration=iteration,
            message=exc.message,
            lambda_=getattr(exc, "lambda_", None),
        )

    def to_exception(self) -> FactorGraphError:
        if self.kind == "MissingVariable":
            return MissingVariable(self.keys[0], self.iteration)
        if self.kind == "RankDeficiency":
            return RankDeficiency(self.keys, self.iteration)
        if self.kind == "NoProgress":
            return NoProgress(self.iteration, self.lambda_ or 0.0, self.keys)
        return FactorGraphError(self.message, self.keys, self.iteration)


@dataclass(frozen=True)
class OptimizerState:
    values: Values
    error: float
    iteration: int = 0
    status: OptimizerStatus = OptimizerStatus.INITIALIZED
    lambda_: Optional[float] = None
    inner_iterations: int = 0
    failure: Optional[Failure] = None

    @property
    def done(self) -> bool:
        return self.status.terminal

    def replace(self, **changes) -> "OptimizerState":
        return dataclasses.replace(self, **changes)


def check_convergence(
    relative_error_tol: float,
    absolute_error_tol: float,
    error_tol: float,
    current_error: float,
    new_error: float,
) -> bool:
    """
    True once the error is small enough or stopped decreasing enough.

    An error increase counts as converged (it cannot be a useful decrease),
    and is logged, since it usually means the linearization is poor.
    """
    if new_error <= error_tol:
        return True
    absolute_decrease = current_error - new_error
    if absolute_decrease < 0.0:
        logger.warning(
            "Error increased from {:.6g} to {:.6g}; stopping",
            current_error,
            new_error,
        )
    if absolute_decrease <= absolute_error_tol:
        return True
    relative_decrease = absolute_decrease / current_error
    return relative_decrease <= relative_error_tol


class NonlinearOptimizer(ABC):
    """
    Shared plumbing: ordering, linear solve, status bookkeeping.

    ``state`` is the starting snapshot. ``iterate`` and ``run`` return new
    states and leave the optimizer itself untouched, so one optimizer can
    be driven from several states.
    """

    params: GaussNewtonParams

    def __init__(
        self,
        graph: FactorGraph,
        initial_values: Values,
        ordering: Optional[Union[Ordering, Sequence[Key]]] = None,
        params: Optional[GaussNewtonParams] = None,
    ) -> None:
        self.graph = graph
        self.params = params if params is not None else self.default_params()
        if ordering is None:
            ordering = graph.ordering(initial_values, self.params.ordering_type)
        elif not isinstance(ordering, Ordering):
            ordering = Ordering(ordering)
        self.ordering = ordering
        self.state = self._initial_state(initial_values)

    @staticmethod
    @abstractmethod
    def default_params() -> GaussNewtonParams:
        ...

    def _initial_state(self, values: Values) -> OptimizerState:
        try:
            error = self.graph.error(values, self.params.max_workers)
        except MissingVariable as exc:
            return self._failed(OptimizerState(values, float("inf")), exc, 0)
        return OptimizerState(values=values, error=error)

    # --- Building blocks ---

    def _solve(self, linear: GaussianFactorGraph) -> VectorValues:
        return linear.optimize(
            self.ordering,
            elimination=self.params.elimination,
            rank_tolerance=self.params.rank_tolerance,
            max_workers=self.params.max_workers,
        )

    def _evaluate(self, values: Values, delta: VectorValues) -> Tuple[Values, float]:
        # Variables outside the ordering touch no factor; they stay put.
        for key, value in values.items():
            if key not in delta:
                delta.insert(key, jnp.zeros(value.dim))
        candidate = values.retract(delta)
        return candidate, self.graph.error(candidate, self.params.max_workers)

    def _next_status(self, current_error: float, new_error: float, iteration: int) -> OptimizerStatus:
        p = self.params
        if check_convergence(p.relative_error_tol, p.absolute_error_tol, p.error_tol, current_error, new_error):
            return OptimizerStatus.CONVERGED
        if iteration >= p.max_iterations:
            return OptimizerStatus.MAX_ITERATIONS
        return OptimizerStatus.ITERATING

    @staticmethod
    def _failed(state: OptimizerState, exc: FactorGraphError, iteration: int) -> OptimizerState:
        exc.at_iteration(iteration)
        logger.warning("Optimization failed: {}", exc)
        return state.replace(
            iteration=iteration,
            status=OptimizerStatus.FAILED,
            failure=Failure.from_exception(exc, iteration),
        )

    # --- Public API ---

    @abstractmethod
    def _iterate(self, state: OptimizerState) -> OptimizerState:
        ...

    def iterate(self, state: Optional[OptimizerState] = None) -> OptimizerState:
        """One outer iteration from ``state`` (default: the starting state)."""
        state = self.state if state is None else state
        if state.status in (OptimizerStatus.FAILED, OptimizerStatus.NO_PROGRESS):
            return state
        return self._iterate(state)

    def run(self) -> OptimizerState:
        """Iterate until a terminal status."""
        state = self.state
        logger.info(
            "{}: {} factors, {} variables, initial error {:.6g}",
            type(self).__name__,
            self.graph.nr_factors(),
            len(state.values),
            state.error,
        )
        while not state.done:
            if state.iteration >= self.params.max_iterations:
                state = state.replace(status=OptimizerStatus.MAX_ITERATIONS)
                break
            state = self.iterate(state)
        logger.info(
            "{} finished: {} after {} iterations, error {:.6g}",
            type(self).__name__,
            state.status.value,
            state.iteration,
            state.error,
        )
        return state

    def optimize(self) -> Values:
        """Run to completion and return the final Values."""
        state = self.run()
        if state.status is OptimizerStatus.FAILED:
            raise state.failure.to_exception()
        if state.status is OptimizerStatus.NO_PROGRESS:
            logger.warning(
                "Returning last accepted values after no progress at iteration {}",
                state.iteration,
            )
        return state.values

    def error(self) -> float:
        return self.state.error

    def values(self) -> Values:
        return self.state.values


class GaussNewtonOptimizer(NonlinearOptimizer):
    """Undamped Gauss-Newton: every solved step is taken."""

    params: GaussNewtonParams

    @staticmethod
    def default_params() -> GaussNewtonParams:
        return GaussNewtonParams()

    def _iterate(self, state: OptimizerState) -> OptimizerState:
        iteration = state.iteration + 1
        try:
            linear = self.graph.linearize(state.values, self.params.max_workers)
            delta = self._solve(linear)
            new_values, new_error = self._evaluate(state.values, delta)
        except (MissingVariable, RankDeficiency) as exc:
            return self._failed(state, exc, iteration)

        status = self._next_status(state.error, new_error, iteration)
        logger.debug(
            "GN iteration {}: error {:.6g} -> {:.6g}",
            iteration,
            state.error,
            new_error,
        )
        return OptimizerState(
            values=new_values,
            error=new_error,
            iteration=iteration,
            status=status,
        )


class LevenbergMarquardtOptimizer(NonlinearOptimizer):
    """
    Levenberg-Marquardt with the usual multiplicative lambda schedule.

    A candidate is accepted when its error is not larger than the current
    error; ties are accepted so the optimizer sits still at a minimum.
    """

    params: LevenbergMarquardtParams

    @staticmethod
    def default_params() -> LevenbergMarquardtParams:
        return LevenbergMarquardtParams()

    def _initial_state(self, values: Values) -> OptimizerState:
        return super()._initial_state(values).replace(lambda_=self.params.initial_lambda)

    def _increase_lambda(self, lambda_: float) -> float:
        p = self.params
        if lambda_ <= 0.0:
            return min(p.lambda_upper_bound, max(p.lambda_lower_bound, p.initial_lambda))
        return min(p.lambda_upper_bound, lambda_ * p.lambda_factor)

    def _decrease_lambda(self, lambda_: float) -> float:
        return max(self.params.lambda_lower_bound, lambda_ / self.params.lambda_factor)

    def _iterate(self, state: OptimizerState) -> OptimizerState:
        p = self.params
        iteration = state.iteration + 1
        lambda_ = p.initial_lambda if state.lambda_ is None else state.lambda_

        try:
            linear = self.graph.linearize(state.values, p.max_workers)
        except MissingVariable as exc:
            return self._failed(state, exc, iteration)
        # Only variables that take part in the solve get damped.
        dims = {key: d for key, d in state.values.dims().items() if key in self.ordering}

        inner = 0
        while True:
            inner += 1
            system = linear if lambda_ == 0.0 else linear.add_damping(lambda_, dims, p.diagonal_damping)
            try:
                delta = self._solve(system)
                candidate, candidate_error = self._evaluate(state.values, delta)
            except (MissingVariable, RankDeficiency) as exc:
                return self._failed(state.replace(lambda_=lambda_, inner_iterations=inner), exc, iteration)

            if candidate_error <= state.error:
                status = self._next_status(state.error, candidate_error, iteration)
                logger.debug(
                    "LM iteration {}: accepted at lambda={:.3g} after {} tries, error {:.6g} -> {:.6g}",
                    iteration,
                    lambda_,
                    inner,
                    state.error,
                    candidate_error,
                )
                return OptimizerState(
                    values=candidate,
                    error=candidate_error,
                    iteration=iteration,
                    status=status,
                    lambda_=self._decrease_lambda(lambda_),
                    inner_iterations=inner,
                )

            logger.debug(
                "LM iteration {}: rejected at lambda={:.3g}, error {:.6g} > {:.6g}",
                iteration,
                lambda_,
                candidate_error,
                state.error,
            )
            if lambda_ >= p.lambda_upper_bound or inner >= p.max_inner_iterations:
                exc = NoProgress(iteration, lambda_)
                logger.warning("{}", exc)
                return state.replace(
                    iteration=iteration,
                    status=OptimizerStatus.NO_PROGRESS,
                    lambda_=lambda_,
                    inner_iterations=inner,
                    failure=Failure.from_exception(exc, iteration),
                )
            lambda_ = self._increase_lambda(lambda_)


def optimize_gn(
    graph: FactorGraph,
    values: Values,
    params: Optional[GaussNewtonParams] = None,
) -> Values:
    """Gauss-Newton with the default ordering; returns the optimized Values."""
    return GaussNewtonOptimizer(graph, values, params=params).optimize()


def optimize_lm(
    graph: FactorGraph,
    values: Values,
    params: Optional[LevenbergMarquardtParams] = None,
) -> Values:
    """Levenberg-Marquardt with the default ordering; returns the optimized Values."""
    return LevenbergMarquardtOptimizer(graph, values, params=params).optimize()


__all__ = [
    "OptimizerStatus",
    "Failure",
    "OptimizerState",
    "check_convergence",
    "NonlinearOptimizer",
    "GaussNewtonOptimizer",
    "LevenbergMarquardtOptimizer",
    "optimize_gn",
    "optimize_lm",
]
