# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Optimizer configuration for FGO-JIT.

GaussNewtonParams
    Dataclass holding the settings every optimizer shares:
    - max_iterations: hard cap on outer iterations
    - relative_error_tol / absolute_error_tol: stop when the error decrease
      between two iterations falls below either threshold
    - error_tol: stop once the error itself is at or below this floor
    - ordering_type: heuristic used when no Ordering is passed in
    - elimination: "SEQUENTIAL" or "MULTIFRONTAL"
    - rank_tolerance: relative pivot threshold for RankDeficiency
    - max_workers: thread pool size for factor evaluation and multifrontal
      elimination (None or 1 keeps everything on the calling thread)

LevenbergMarquardtParams
    Adds the trust-region damping schedule:
    - initial_lambda, lambda_factor
    - lambda_lower_bound / lambda_upper_bound: clamp for lambda
    - max_inner_iterations: solve attempts per linearization point
    - diagonal_damping: scale damping by diag(JᵀJ) instead of I

Defaults follow common practice for SLAM-sized problems and are
module-level constants, so they can be overridden in one place.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from ..linear.ordering import ORDERING_TYPES

DEFAULT_ORDERING_TYPE = "MIN_DEGREE"
DEFAULT_ELIMINATION = "SEQUENTIAL"
ELIMINATION_METHODS = ("SEQUENTIAL", "MULTIFRONTAL")


@dataclass
class GaussNewtonParams:
    max_iterations: int = 100
    relative_error_tol: float = 1e-5
    absolute_error_tol: float = 1e-5
    error_tol: float = 0.0
    ordering_type: str = DEFAULT_ORDERING_TYPE
    elimination: str = DEFAULT_ELIMINATION
    rank_tolerance: float = 1e-9
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        for name in ("relative_error_tol", "absolute_error_tol", "error_tol", "rank_tolerance"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.ordering_type not in ORDERING_TYPES:
            raise ValueError(
                f"ordering_type must be one of {ORDERING_TYPES}, got '{self.ordering_type}'"
            )
        if self.elimination not in ELIMINATION_METHODS:
            raise ValueError(
                f"elimination must be one of {ELIMINATION_METHODS}, got '{self.elimination}'"
            )
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")


@dataclass
class LevenbergMarquardtParams(GaussNewtonParams):
    initial_lambda: float = 1e-5
    lambda_factor: float = 10.0
    lambda_upper_bound: float = 1e5
    lambda_lower_bound: float = 0.0
    max_inner_iterations: int = 10
    diagonal_damping: bool = False

    def validate(self) -> None:
        super().validate()
        if self.lambda_factor <= 1.0:
            raise ValueError(f"lambda_factor must be > 1, got {self.lambda_factor}")
        if not 0.0 <= self.lambda_lower_bound <= self.lambda_upper_bound:
            raise ValueError(
                "Need 0 <= lambda_lower_bound <= lambda_upper_bound, got "
                f"[{self.lambda_lower_bound}, {self.lambda_upper_bound}]"
            )
        if not self.lambda_lower_bound <= self.initial_lambda <= self.lambda_upper_bound:
            raise ValueError(
                f"initial_lambda {self.initial_lambda} is outside "
                f"[{self.lambda_lower_bound}, {self.lambda_upper_bound}]"
            )
        if self.max_inner_iterations < 1:
            raise ValueError(
                f"max_inner_iterations must be >= 1, got {self.max_inner_iterations}"
            )
