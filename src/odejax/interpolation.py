"""Cubic Hermite dense output.

Every accepted step stores the state and the derivative at both ends, which
is exactly the data a cubic Hermite interpolant needs. The interpolant is
3rd-order accurate, reproduces cubics exactly, and matches state and
derivative at both grid points, so it is continuous and smooth across
segments without any scheme-specific continuous extension.
"""

from __future__ import annotations

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype


def hermite_interpolate(
    t0: float,
    x0: ArrayLike,
    f0: ArrayLike,
    t1: float,
    x1: ArrayLike,
    f1: ArrayLike,
    t: float,
) -> Array:
    """Evaluate the cubic Hermite interpolant of one segment at *t*.

    With ``h = t1 - t0`` and ``s = (t - t0) / h``:

    .. math::

        x(t) = (2s^3 - 3s^2 + 1) x_0 + (s^3 - 2s^2 + s) h f_0
             + (-2s^3 + 3s^2) x_1 + (s^3 - s^2) h f_1

    Args:
        t0: Left time of the segment.
        x0: State at ``t0``.
        f0: Derivative at ``t0``.
        t1: Right time of the segment (may be less than ``t0``).
        x1: State at ``t1``.
        f1: Derivative at ``t1``.
        t: Query time, normally within the segment.

    Returns:
        jax.Array: Interpolated state.
    """
    dtype = get_dtype()
    h = t1 - t0
    if h == 0.0:
        return jnp.asarray(x0, dtype=dtype)
    s = (t - t0) / h
    s2 = s * s
    s3 = s2 * s
    return (
        (2.0 * s3 - 3.0 * s2 + 1.0) * jnp.asarray(x0, dtype=dtype)
        + (s3 - 2.0 * s2 + s) * h * jnp.asarray(f0, dtype=dtype)
        + (-2.0 * s3 + 3.0 * s2) * jnp.asarray(x1, dtype=dtype)
        + (s3 - s2) * h * jnp.asarray(f1, dtype=dtype)
    )
