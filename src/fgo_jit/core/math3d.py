"""
SO(2), SO(3) and pose operations for FGO-JIT.

This module implements the small amount of Lie-group mathematics the
reference manifold types in ``slam.manifold`` need:

    • SO(2) angle wrapping and 2x2 rotations
    • SO(3) exponential & logarithm maps (rotation vector <-> matrix)
    • Composition, inversion and relative pose for 6D pose vectors

Poses are stored as flat vectors, the same way throughout the library:

    Pose2: [x, y, theta]
    Pose3: [tx, ty, tz, wx, wy, wz]       (translation, rotation vector)

Everything is plain ``jax.numpy`` so that factors can differentiate through
these functions with ``jax.jacfwd`` when they are linearized.

Key Functions
-------------
so3_exp(w), so3_log(R)
    Rodrigues' formula and its inverse.

compose_pose_se3(a, b), relative_pose_se3(a, b), inverse_pose_se3(a)
    Group operations on 6D pose vectors.

compose_pose_se2(a, b), relative_pose_se2(a, b), inverse_pose_se2(a)
    Group operations on 3D planar pose vectors.

Notes
-----
Small-angle branches are selected with ``jnp.where`` and the angle itself is
computed from a guarded square root, so forward-mode derivatives stay finite
at exactly zero rotation. Linearizing a factor at a perfect estimate hits
that point on every call.
"""

from __future__ import annotations

import jax.numpy as jnp

_SMALL_ANGLE = 1e-8


def wrap_angle(theta: jnp.ndarray) -> jnp.ndarray:
    """Wrap an angle to (-pi, pi]."""
    return jnp.arctan2(jnp.sin(theta), jnp.cos(theta))


def rot2(theta: jnp.ndarray) -> jnp.ndarray:
    c, s = jnp.cos(theta), jnp.sin(theta)
    return jnp.array([[c, -s], [s, c]])


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    zero = jnp.zeros_like(x)
    return jnp.array(
        [
            [zero, -z, y],
            [z, zero, -x],
            [-y, x, zero],
        ]
    )


def vee(W: jnp.ndarray) -> jnp.ndarray:
    """Inverse of ``hat`` (antisymmetric part of W)."""
    return jnp.array([
        W[2, 1] - W[1, 2],
        W[0, 2] - W[2, 0],
        W[1, 0] - W[0, 1],
    ]) / 2.0


def _safe_angle(theta_sq: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    small = theta_sq < _SMALL_ANGLE * _SMALL_ANGLE
    theta = jnp.sqrt(jnp.where(small, 1.0, theta_sq))
    return small, theta


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Rodrigues' formula, with the second-order Taylor expansion near zero.
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    small, theta = _safe_angle(theta_sq)
    W = hat(w)
    W2 = W @ W

    a = jnp.where(small, 1.0 - theta_sq / 6.0, jnp.sin(theta) / theta)
    b = jnp.where(
        small,
        0.5 - theta_sq / 24.0,
        (1.0 - jnp.cos(theta)) / jnp.where(small, 1.0, theta_sq),
    )
    return jnp.eye(3) + a * W + b * W2


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map for SO(3).

    Returns w in R^3 such that so3_exp(w) ~ R. The trace is clamped to
    [-1, 3] before ``arccos``. Accuracy degrades for rotations close to pi,
    where the antisymmetric part of R vanishes.
    """
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    w_skew = vee(R)

    # sin(theta) ~ |vee(R)| is well-conditioned near zero, arccos is not.
    sin_sq = jnp.dot(w_skew, w_skew)
    small, sin_theta = _safe_angle(sin_sq)
    theta = jnp.arctan2(sin_theta, cos_theta)
    factor = jnp.where(small & (cos_theta > 0.0), 1.0 + sin_sq / 6.0, theta / sin_theta)
    return factor * w_skew


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a 6D pose vector into translation and rotation-vector (axis-angle).
    v: [tx, ty, tz, wx, wy, wz]
    """
    v = jnp.asarray(v)
    return v[0:3], v[3:6]


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compose two SE(3) poses in 6D vector form: a ∘ b.

        R = Ra Rb,   t = Ra tb + ta
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    R = Ra @ Rb
    t = Ra @ tb + ta
    return jnp.concatenate([t, so3_log(R)])


def inverse_pose_se3(a: jnp.ndarray) -> jnp.ndarray:
    ta, wa = pose_vec_to_rt(a)
    Ra = so3_exp(wa)
    return jnp.concatenate([-(Ra.T @ ta), -wa])


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Relative pose from a to b in 6D vector form, a⁻¹ ∘ b:

      t_rel = R_a^T (t_b - t_a)
      w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    w_rel = so3_log(Ra.T @ Rb)
    t_rel = Ra.T @ (tb - ta)
    return jnp.concatenate([t_rel, w_rel])


def pose_se3_to_matrix(a: jnp.ndarray) -> jnp.ndarray:
    t, w = pose_vec_to_rt(a)
    T = jnp.eye(4)
    T = T.at[:3, :3].set(so3_exp(w))
    T = T.at[:3, 3].set(t)
    return T


def matrix_to_pose_se3(T: jnp.ndarray) -> jnp.ndarray:
    T = jnp.asarray(T)
    return jnp.concatenate([T[:3, 3], so3_log(T[:3, :3])])


def compose_pose_se2(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """a ∘ b for planar poses [x, y, theta]."""
    t = a[:2] + rot2(a[2]) @ b[:2]
    return jnp.concatenate([t, jnp.reshape(wrap_angle(a[2] + b[2]), (1,))])


def inverse_pose_se2(a: jnp.ndarray) -> jnp.ndarray:
    t = -(rot2(a[2]).T @ a[:2])
    return jnp.concatenate([t, jnp.reshape(wrap_angle(-a[2]), (1,))])


def relative_pose_se2(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """a⁻¹ ∘ b for planar poses [x, y, theta]."""
    t = rot2(a[2]).T @ (b[:2] - a[:2])
    return jnp.concatenate([t, jnp.reshape(wrap_angle(b[2] - a[2]), (1,))])
