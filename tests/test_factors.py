import jax.numpy as jnp
import pytest

from fgo_jit.core.errors import MissingVariable
from fgo_jit.core.factors import ResidualFactor
from fgo_jit.core.noise_model import Diagonal, Isotropic
from fgo_jit.core.types import symbol
from fgo_jit.core.values import Values
from fgo_jit.slam.manifold import Point2, Pose2, Pose3, Vector
from fgo_jit.slam.measurements import BetweenFactor, PriorFactor


x1, x2 = symbol("x", 1), symbol("x", 2)


def numerical_jacobians(factor, values, h=1e-6):
    """Central differences of the unwhitened error in each variable's tangent space."""
    Js = []
    for key in factor.keys:
        x = values.at(key)
        cols = []
        for i in range(x.dim):
            d = jnp.zeros(x.dim).at[i].set(h)
            plus, minus = values.copy(), values.copy()
            plus.update(key, x.retract(d))
            minus.update(key, x.retract(-d))
            cols.append((factor.unwhitened_error(plus) - factor.unwhitened_error(minus)) / (2 * h))
        Js.append(jnp.stack(cols, axis=1))
    return Js


def test_prior_error_and_linearization_on_vector():
    """
    Prior on a 2D point with sigma 0.5:

        r = x - prior = [1, -2]
        error = 0.5 * ||r / 0.5||² = 0.5 * (4 + 16) = 10
    """
    factor = PriorFactor(x1, Point2(1.0, 1.0), Isotropic.from_sigma(2, 0.5))
    values = Values({x1: Point2(2.0, -1.0)})

    assert factor.error(values) == pytest.approx(10.0)

    jf = factor.linearize(values)
    assert jf.keys == (x1,)
    assert jnp.allclose(jf.get_a(x1), 2.0 * jnp.eye(2))
    assert jnp.allclose(jf.b, jnp.array([-2.0, 4.0]))
    # At delta = 0 the linear error equals the nonlinear one.
    assert jf.error(values.zero_vectors()) == pytest.approx(10.0)


def test_error_is_zero_at_measurement():
    factor = BetweenFactor(x1, x2, Pose2(1.0, 0.0, 0.1))
    values = Values({x1: Pose2(0.5, 0.5, 0.2), x2: Pose2(0.5, 0.5, 0.2).compose(Pose2(1.0, 0.0, 0.1))})
    assert factor.error(values) == pytest.approx(0.0, abs=1e-20)


def test_pose2_between_jacobians_match_finite_differences():
    factor = BetweenFactor(x1, x2, Pose2(1.0, 0.2, 0.3), Diagonal.from_sigmas([0.1, 0.1, 0.05]))
    values = Values({x1: Pose2(0.3, -0.4, 0.7), x2: Pose2(1.1, 0.6, 1.4)})

    r, Js = factor.jacobians(values)
    assert r.shape == (3,)
    for J, J_num in zip(Js, numerical_jacobians(factor, values)):
        assert J.shape == (3, 3)
        assert jnp.allclose(J, J_num, atol=1e-6)


def test_pose3_between_jacobians_match_finite_differences():
    factor = BetweenFactor(x1, x2, Pose3(1.0, 0.0, 0.0, 0.0, 0.0, 0.2))
    values = Values(
        {
            x1: Pose3(0.1, 0.2, -0.1, 0.05, -0.1, 0.3),
            x2: Pose3(1.2, 0.4, 0.0, 0.1, 0.0, 0.6),
        }
    )
    _, Js = factor.jacobians(values)
    for J, J_num in zip(Js, numerical_jacobians(factor, values)):
        assert J.shape == (6, 6)
        assert jnp.allclose(J, J_num, atol=1e-6)


def test_jacobians_are_finite_at_perfect_estimate():
    factor = BetweenFactor(x1, x2, Pose3(1.0, 0.0, 0.0, 0.0, 0.0, 0.0))
    values = Values({x1: Pose3.identity(), x2: Pose3(1.0, 0.0, 0.0, 0.0, 0.0, 0.0)})
    jf = factor.linearize(values)
    for A in jf.blocks:
        assert jnp.all(jnp.isfinite(A))
    assert jnp.allclose(jf.get_a(x2), jnp.eye(6), atol=1e-12)


def test_linearize_whitens_jacobian_and_rhs():
    factor = BetweenFactor(x1, x2, Point2(1.0, 0.0), Isotropic.from_sigma(2, 0.1))
    values = Values({x1: Point2(0.0, 0.0), x2: Point2(1.5, 0.0)})
    jf = factor.linearize(values)
    assert jnp.allclose(jf.get_a(x1), -10.0 * jnp.eye(2))
    assert jnp.allclose(jf.get_a(x2), 10.0 * jnp.eye(2))
    assert jnp.allclose(jf.b, jnp.array([-5.0, 0.0]))


def test_residual_factor_passes_params():
    factor = ResidualFactor(
        (x1,),
        lambda x, target: x - target,
        Isotropic.from_sigma(3, 1.0),
        params={"target": jnp.array([1.0, 2.0, 3.0])},
    )
    values = Values({x1: Vector(jnp.array([1.0, 2.0, 5.0]))})
    assert factor.error(values) == pytest.approx(2.0)


def test_missing_variable_names_the_key():
    factor = BetweenFactor(x1, x2, Point2(1.0, 0.0))
    values = Values({x1: Point2(0.0, 0.0)})
    with pytest.raises(MissingVariable) as excinfo:
        factor.linearize(values)
    assert excinfo.value.keys == (x2,)
    with pytest.raises(MissingVariable):
        factor.error(values)


def test_noise_model_dimension_must_match_residual():
    factor = PriorFactor(x1, Pose2(0.0, 0.0, 0.0), Isotropic.from_sigma(2, 1.0))
    with pytest.raises(ValueError):
        factor.error(Values({x1: Pose2(0.0, 0.0, 0.0)}))


def test_factor_scope_rejects_duplicates():
    with pytest.raises(ValueError):
        BetweenFactor(x1, x1, Point2(1.0, 0.0))


def test_between_needs_group_measurement():
    with pytest.raises(ValueError):
        BetweenFactor(x1, x2, jnp.array([1.0, 0.0]))
