import jax.numpy as jnp
import pytest

from fgo_jit.core.noise_model import (
    Diagonal,
    Gaussian,
    Isotropic,
    Unit,
)


def test_isotropic_whitening_scales_by_inverse_sigma():
    model = Isotropic.from_sigma(2, 0.1)
    assert model.dim == 2
    assert jnp.allclose(model.whiten(jnp.array([1.0, -1.0])), jnp.array([10.0, -10.0]))
    assert float(model.distance(jnp.array([1.0, 0.0]))) == pytest.approx(100.0)


def test_diagonal_whitening_is_elementwise():
    model = Diagonal.from_sigmas([1.0, 2.0])
    r = jnp.array([4.0, 4.0])
    assert jnp.allclose(model.whiten(r), jnp.array([4.0, 2.0]))

    H = jnp.ones((2, 3))
    assert jnp.allclose(model.whiten_jacobian(H), jnp.array([[1.0] * 3, [0.5] * 3]))
    assert jnp.allclose(model.sigmas, jnp.array([1.0, 2.0]))


def test_diagonal_from_precisions_matches_from_sigmas():
    a = Diagonal.from_precisions([4.0, 0.25])
    b = Diagonal.from_sigmas([0.5, 2.0])
    assert jnp.allclose(a.inv_sigmas, b.inv_sigmas)


def test_gaussian_from_covariance():
    cov = jnp.array([[4.0, 0.0], [0.0, 9.0]])
    model = Gaussian.from_covariance(cov)
    assert jnp.allclose(model.whiten(jnp.array([2.0, 3.0])), jnp.array([1.0, 1.0]))
    assert jnp.allclose(model.covariance(), cov)


def test_gaussian_full_covariance_whitens_to_unit_distance():
    cov = jnp.array([[2.0, 0.5], [0.5, 1.0]])
    model = Gaussian.from_covariance(cov)
    # Mahalanobis distance rᵀ Σ⁻¹ r.
    r = jnp.array([1.0, -2.0])
    expected = float(r @ jnp.linalg.solve(cov, r))
    assert float(model.distance(r)) == pytest.approx(expected, rel=1e-10)


def test_non_spd_information_is_rejected():
    with pytest.raises(ValueError):
        Gaussian.from_information(jnp.array([[1.0, 2.0], [2.0, 1.0]]))


def test_non_positive_sigma_is_rejected():
    with pytest.raises(ValueError):
        Diagonal.from_sigmas([1.0, -1.0])


def test_unit_is_identity():
    model = Unit(3)
    r = jnp.array([1.0, -2.0, 3.0])
    assert jnp.array_equal(model.whiten(r), r)
    assert model.dim == 3
