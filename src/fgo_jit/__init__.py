# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
FGO-JIT: factor graph optimization by variable elimination.

Importing the package enables 64-bit floats in JAX. Residuals whitened by
tight noise models (sigmas down to 1e-10) and the convergence thresholds used
by the optimizers need double precision, and the flag must be set before any
array is created, so it lives here rather than in a submodule.
"""

from __future__ import annotations

import jax

jax.config.update("jax_enable_x64", True)

from .core.types import Key, symbol  # noqa: E402
from .core.errors import (  # noqa: E402
    FactorGraphError,
    MissingVariable,
    RankDeficiency,
    NoProgress,
)
from .core.values import Values, VectorValues  # noqa: E402
from .core.noise_model import Gaussian, Diagonal, Isotropic, Unit  # noqa: E402
from .core.factors import Factor, NoiseModelFactor, ResidualFactor  # noqa: E402
from .core.factor_graph import FactorGraph  # noqa: E402
from .slam.manifold import Manifold, Vector, Point2, Point3, Pose2, Pose3  # noqa: E402
from .slam.measurements import PriorFactor, BetweenFactor  # noqa: E402
from .linear.ordering import Ordering  # noqa: E402
from .linear.gaussian import (  # noqa: E402
    JacobianFactor,
    GaussianFactorGraph,
    GaussianConditional,
    GaussianBayesNet,
)
from .optimization.params import GaussNewtonParams, LevenbergMarquardtParams  # noqa: E402
from .optimization.solvers import (  # noqa: E402
    OptimizerStatus,
    Failure,
    OptimizerState,
    GaussNewtonOptimizer,
    LevenbergMarquardtOptimizer,
    optimize_gn,
    optimize_lm,
)

__version__ = "0.1.0"
