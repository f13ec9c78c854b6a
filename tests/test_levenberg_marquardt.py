from __future__ import annotations

import jax.numpy as jnp
import pytest

from fgo_jit.core.errors import NoProgress
from fgo_jit.core.factor_graph import FactorGraph
from fgo_jit.core.factors import Factor, ResidualFactor
from fgo_jit.core.noise_model import Isotropic
from fgo_jit.core.types import symbol
from fgo_jit.core.values import Values
from fgo_jit.linear.gaussian import JacobianFactor
from fgo_jit.linear.ordering import Ordering
from fgo_jit.optimization.params import GaussNewtonParams, LevenbergMarquardtParams
from fgo_jit.optimization.solvers import (
    GaussNewtonOptimizer,
    LevenbergMarquardtOptimizer,
    OptimizerStatus,
    optimize_lm,
)
from fgo_jit.slam.manifold import Point2, Pose2, Vector
from fgo_jit.slam.measurements import BetweenFactor, PriorFactor


X = [symbol("x", i) for i in range(4)]


class UphillFactor(Factor):
    """
    error = ½ (x - 1)², but linearized with the wrong sign, so every solved
    step points away from the minimum whatever the damping.
    """

    def __init__(self, key):
        super().__init__((key,))

    def error(self, values):
        x = values.at(self.keys[0]).value
        return 0.5 * float(jnp.sum((x - 1.0) ** 2))

    def linearize(self, values):
        x = values.at(self.keys[0]).value
        return JacobianFactor(self.keys, [jnp.eye(1)], x - 1.0)


def uphill_problem():
    graph = FactorGraph([UphillFactor(X[0])])
    values = Values({X[0]: Vector(jnp.array([2.0]))})
    return graph, values


def pose2_chain():
    truth = [Pose2(0.0, 0.0, 0.0), Pose2(1.0, 0.0, 0.5), Pose2(1.9, 0.5, 1.0)]
    graph = FactorGraph([PriorFactor(X[0], truth[0], Isotropic.from_sigma(3, 0.01))])
    for i in range(2):
        graph.add_factor(BetweenFactor(X[i], X[i + 1], truth[i].between(truth[i + 1]), Isotropic.from_sigma(3, 0.1)))
    offsets = [(0.05, -0.05, 0.02), (-0.1, 0.08, -0.05), (0.1, 0.1, 0.05)]
    values = Values({X[i]: p.retract(jnp.array(offsets[i])) for i, p in enumerate(truth)})
    return graph, values, truth


@pytest.mark.parametrize("elimination", ["SEQUENTIAL", "MULTIFRONTAL"])
def test_one_iteration_factorization(elimination):
    """
    A near-hard prior pins x1; one damped step moves x2 onto the odometry
    measurement, short only by the λ/(1+λ) damping bias.
    """
    graph = FactorGraph(
        [
            PriorFactor(X[1], Pose2(0.0, 0.0, 0.0), Isotropic.from_sigma(3, 1e-10)),
            BetweenFactor(X[1], X[2], Pose2(1.0, 0.0, 0.0), Isotropic.from_sigma(3, 1.0)),
        ]
    )
    values = Values({X[1]: Pose2(0.0, 0.0, 0.0), X[2]: Pose2(1.5, 0.0, 0.0)})

    params = LevenbergMarquardtParams(elimination=elimination)
    # x1 and x2 share one clique under multifrontal elimination.
    optimizer = LevenbergMarquardtOptimizer(graph, values, ordering=Ordering([X[1], X[2]]), params=params)
    state = optimizer.iterate()

    assert state.failure is None
    assert state.iteration == 1
    assert state.inner_iterations == 1
    assert state.values.at(X[1]).equals(Pose2(0.0, 0.0, 0.0), tol=1e-5)
    assert state.values.at(X[2]).equals(Pose2(1.0, 0.0, 0.0), tol=1e-5)
    assert state.lambda_ == pytest.approx(1e-6)


def test_really_nonlinear_converges():
    factor = ResidualFactor(
        (X[0],),
        lambda x: jnp.array([jnp.cos(x[0]), jnp.sin(x[1])]) - jnp.array([1.0, 0.0]),
        Isotropic.from_sigma(2, 0.1),
    )
    graph = FactorGraph([factor])
    values = Values({X[0]: Vector(jnp.array([3.0, 3.0]))})

    state = LevenbergMarquardtOptimizer(graph, values).run()
    assert state.status is OptimizerStatus.CONVERGED
    assert state.error < 1e-5


def test_zero_lambda_iteration_equals_gauss_newton():
    graph, values, _ = pose2_chain()
    gn = GaussNewtonOptimizer(graph, values).iterate()

    lm = LevenbergMarquardtOptimizer(graph, values)
    undamped = lm.iterate(lm.state.replace(lambda_=0.0))

    assert undamped.inner_iterations == 1
    assert undamped.lambda_ == 0.0
    assert undamped.values.equals(gn.values, tol=1e-12)
    assert undamped.error == pytest.approx(gn.error, rel=1e-12)


def test_chain_recovers_truth():
    graph, values, truth = pose2_chain()
    result = optimize_lm(graph, values)
    for i, p in enumerate(truth):
        assert result.at(X[i]).equals(p, tol=1e-5)


def test_diagonal_damping_also_converges():
    graph, values, truth = pose2_chain()
    params = LevenbergMarquardtParams(diagonal_damping=True, elimination="MULTIFRONTAL")
    state = LevenbergMarquardtOptimizer(graph, values, params=params).run()
    assert state.status is OptimizerStatus.CONVERGED
    for i, p in enumerate(truth):
        assert state.values.at(X[i]).equals(p, tol=1e-5)


def test_factorization_multifrontal_matches_sequential():
    graph = FactorGraph(
        [
            PriorFactor(X[1], Pose2(0.0, 0.0, 0.0), Isotropic.from_sigma(3, 1e-10)),
            BetweenFactor(X[1], X[2], Pose2(1.0, 0.0, 0.0), Isotropic.from_sigma(3, 1.0)),
        ]
    )
    values = Values({X[1]: Pose2(0.0, 0.0, 0.0), X[2]: Pose2(1.5, 0.0, 0.0)})
    ordering = Ordering([X[1], X[2]])

    sequential = LevenbergMarquardtOptimizer(graph, values, ordering=ordering).run()
    multifrontal = LevenbergMarquardtOptimizer(
        graph,
        values,
        ordering=ordering,
        params=LevenbergMarquardtParams(elimination="MULTIFRONTAL"),
    ).run()
    assert sequential.status is OptimizerStatus.CONVERGED
    assert multifrontal.status is OptimizerStatus.CONVERGED
    assert multifrontal.iteration == sequential.iteration
    assert multifrontal.values.equals(sequential.values, tol=1e-8)
    assert multifrontal.values.at(X[2]).equals(Pose2(1.0, 0.0, 0.0), tol=1e-5)


def test_null_factor_does_not_change_result():
    graph, values, _ = pose2_chain()
    padded = FactorGraph([None])
    padded.extend(graph)
    a = LevenbergMarquardtOptimizer(graph, values).iterate()
    b = LevenbergMarquardtOptimizer(padded, values).iterate()
    assert b.values.equals(a.values, tol=1e-12)
    assert b.error == pytest.approx(a.error, rel=1e-12)
    assert b.lambda_ == a.lambda_


def test_variable_outside_ordering_keeps_its_value():
    graph = FactorGraph([PriorFactor(X[1], Point2(1.0, 2.0), Isotropic.from_sigma(2, 0.1))])
    values = Values({X[1]: Point2(0.0, 0.0), X[3]: Point2(5.0, 5.0)})

    state = LevenbergMarquardtOptimizer(graph, values, ordering=Ordering([X[1]])).run()
    assert state.status is OptimizerStatus.CONVERGED
    assert state.failure is None
    assert state.values.at(X[1]).equals(Point2(1.0, 2.0), tol=1e-6)
    assert state.values.at(X[3]).equals(Point2(5.0, 5.0), tol=1e-12)


def test_error_never_increases():
    graph, values, _ = pose2_chain()
    optimizer = LevenbergMarquardtOptimizer(graph, values)
    state = optimizer.state
    errors = [state.error]
    while not state.done:
        state = optimizer.iterate(state)
        errors.append(state.error)
    assert all(b <= a for a, b in zip(errors, errors[1:]))


def test_damping_handles_gauge_freedom():
    """Without a prior Gauss-Newton fails, but damping keeps the system solvable."""
    graph = FactorGraph([BetweenFactor(X[0], X[1], Point2(1.0, 0.0))])
    values = Values({X[0]: Point2(0.0, 0.0), X[1]: Point2(0.5, 0.0)})

    assert GaussNewtonOptimizer(graph, values).run().status is OptimizerStatus.FAILED

    state = LevenbergMarquardtOptimizer(graph, values).run()
    assert state.status is OptimizerStatus.CONVERGED
    assert state.error < 1e-8


def test_rejection_exhausts_inner_iterations():
    graph, values = uphill_problem()
    optimizer = LevenbergMarquardtOptimizer(graph, values)
    state = optimizer.run()

    assert state.status is OptimizerStatus.NO_PROGRESS
    assert state.iteration == 1
    assert state.inner_iterations == optimizer.params.max_inner_iterations
    assert state.failure.kind == "NoProgress"
    assert state.failure.iteration == 1
    # Nothing was accepted.
    assert state.values is values
    assert state.error == pytest.approx(0.5)


def test_rejection_saturates_lambda():
    graph, values = uphill_problem()
    params = LevenbergMarquardtParams(max_inner_iterations=50)
    state = LevenbergMarquardtOptimizer(graph, values, params=params).run()

    assert state.status is OptimizerStatus.NO_PROGRESS
    assert state.lambda_ == pytest.approx(params.lambda_upper_bound)
    assert state.inner_iterations < 50

    exc = state.failure.to_exception()
    assert isinstance(exc, NoProgress)
    assert exc.lambda_ == pytest.approx(params.lambda_upper_bound)
    assert exc.iteration == 1


def test_optimize_returns_last_values_on_no_progress():
    graph, values = uphill_problem()
    result = LevenbergMarquardtOptimizer(graph, values).optimize()
    assert result is values


def test_zero_lambda_is_raised_after_rejection():
    graph, values = uphill_problem()
    params = LevenbergMarquardtParams(max_inner_iterations=2)
    optimizer = LevenbergMarquardtOptimizer(graph, values, params=params)
    state = optimizer.iterate(optimizer.state.replace(lambda_=0.0))

    assert state.status is OptimizerStatus.NO_PROGRESS
    assert state.inner_iterations == 2
    # Zero cannot grow multiplicatively, so the retry restarts from initial_lambda.
    assert state.lambda_ == pytest.approx(params.initial_lambda)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lambda_factor": 1.0},
        {"initial_lambda": 1e6},
        {"lambda_lower_bound": 1.0, "lambda_upper_bound": 0.5},
        {"max_inner_iterations": 0},
        {"ordering_type": "COLAMD"},
    ],
)
def test_invalid_lm_params(kwargs):
    with pytest.raises(ValueError):
        LevenbergMarquardtParams(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_iterations": -1},
        {"relative_error_tol": -1.0},
        {"elimination": "CHOLESKY"},
        {"max_workers": 0},
    ],
)
def test_invalid_gn_params(kwargs):
    with pytest.raises(ValueError):
        GaussNewtonParams(**kwargs)
