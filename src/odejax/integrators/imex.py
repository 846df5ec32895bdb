"""Implicit-explicit (IMEX) splitting integrators.

For problems of the form

.. math::

    \\dot{x} = L x + b + N(t, x)

the stiff linear part ``L x + b`` (typically a discretized diffusion
operator) is treated implicitly and the non-stiff remainder ``N`` explicitly.
Each stage therefore costs one linear solve against ``I - \\gamma h L`` and
no Newton iterations. The solves use a dense LU factorization from
``jax.scipy.linalg``; the operator is supplied by the caller, who is
responsible for building it.

Available schemes:

- :func:`imex_euler_step` -- backward Euler on ``L``, forward Euler on ``N``.
  Order 1; error estimated by step doubling.
- :func:`imex_trapezoid_step` -- Crank-Nicolson on ``L``, Heun on ``N``.
  Order 2; error estimated from the difference between the Euler-predicted
  and Heun-corrected solutions.

Both are forward-only: with a negative step the implicit solve amplifies
the stiff modes instead of damping them.
"""

from __future__ import annotations

from collections.abc import Callable

import jax.numpy as jnp
import jax.scipy.linalg as jsl
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype
from odejax.integrators._types import Algorithm, StepResult


def _factor(linear_operator: Array, gamma_h: Array):
    n = linear_operator.shape[0]
    eye = jnp.eye(n, dtype=linear_operator.dtype)
    return jsl.lu_factor(eye - gamma_h * linear_operator)


def _euler_once(lu, b, nonlinear, t, x, h):
    rhs = x + h * (nonlinear(t, x) + b)
    return jsl.lu_solve(lu, rhs)


def imex_euler_step(
    linear_operator: ArrayLike,
    nonlinear: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    affine: ArrayLike | None = None,
) -> StepResult:
    """Perform one IMEX Euler step with a step-doubling error estimate.

    Solves ``(I - h L) x_1 = x_0 + h (N(t, x_0) + b)`` once with the full step
    and twice with half steps. The two-half-step result is propagated; the
    difference to the full step is the error estimate.

    Args:
        linear_operator: Square matrix ``L`` of shape ``(n, n)``.
        nonlinear: Explicit part ``N(t, x) -> array``.
        t: Current time.
        state: Current state vector.
        dt: Step size (positive).
        affine: Constant vector ``b``; zero if ``None``.

    Returns:
        StepResult: Candidate ``state`` and ``error`` vector.
    """
    dtype = get_dtype()
    L = jnp.asarray(linear_operator, dtype=dtype)
    t = jnp.asarray(t, dtype=dtype)
    x = jnp.asarray(state, dtype=dtype)
    h = jnp.asarray(dt, dtype=dtype)
    b = jnp.zeros_like(x) if affine is None else jnp.asarray(affine, dtype=dtype)

    lu_half = _factor(L, 0.5 * h)
    x_full = _euler_once(_factor(L, h), b, nonlinear, t, x, h)
    x_half = _euler_once(lu_half, b, nonlinear, t, x, 0.5 * h)
    x_two_half = _euler_once(lu_half, b, nonlinear, t + 0.5 * h, x_half, 0.5 * h)

    return StepResult(state=x_two_half, error=x_two_half - x_full)


def imex_trapezoid_step(
    linear_operator: ArrayLike,
    nonlinear: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    affine: ArrayLike | None = None,
) -> StepResult:
    """Perform one Crank-Nicolson / Heun IMEX step.

    With ``A = I - (h/2) L`` and ``r = x_0 + (h/2) L x_0 + h b``:

    .. math::

        A x^{*} = r + h N(t, x_0), \\qquad
        A x_1 = r + \\tfrac{h}{2} \\left(N(t, x_0) + N(t + h, x^{*})\\right)

    Both solves share one LU factorization.

    Args:
        linear_operator: Square matrix ``L`` of shape ``(n, n)``.
        nonlinear: Explicit part ``N(t, x) -> array``.
        t: Current time.
        state: Current state vector.
        dt: Step size (positive).
        affine: Constant vector ``b``; zero if ``None``.

    Returns:
        StepResult: Candidate ``state`` (corrector) and ``error`` vector
        (corrector minus predictor).
    """
    dtype = get_dtype()
    L = jnp.asarray(linear_operator, dtype=dtype)
    t = jnp.asarray(t, dtype=dtype)
    x = jnp.asarray(state, dtype=dtype)
    h = jnp.asarray(dt, dtype=dtype)
    b = jnp.zeros_like(x) if affine is None else jnp.asarray(affine, dtype=dtype)

    lu = _factor(L, 0.5 * h)
    r = x + 0.5 * h * (L @ x) + h * b
    n0 = nonlinear(t, x)
    x_pred = jsl.lu_solve(lu, r + h * n0)
    n1 = nonlinear(t + h, x_pred)
    x_new = jsl.lu_solve(lu, r + 0.5 * h * (n0 + n1))

    return StepResult(state=x_new, error=x_new - x_pred)


def _split(name: str, kernel, order: int) -> Algorithm:
    def step(problem, t, x, dt, params, f0):
        def nonlinear(ti, xi):
            return problem.nonlinear_rhs(ti, xi, params)

        return kernel(
            problem.linear_operator, nonlinear, t, x, dt, affine=problem.affine_term
        )

    return Algorithm(
        name=name,
        step=step,
        order=order,
        error_order=1,
        adaptive=True,
        needs_linear_operator=True,
        supports_backward=False,
    )


def IMEXEuler() -> Algorithm:
    """Adaptive first-order IMEX Euler for split problems."""
    return _split("IMEXEuler", imex_euler_step, 1)


def IMEXTrapezoid() -> Algorithm:
    """Adaptive second-order Crank-Nicolson/Heun IMEX for split problems."""
    return _split("IMEXTrapezoid", imex_trapezoid_step, 2)
