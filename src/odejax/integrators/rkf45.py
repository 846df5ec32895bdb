"""Runge-Kutta-Fehlberg 4(5) adaptive integrator (RKF45).

Implements the Fehlberg embedded Runge-Kutta method with a 5th-order solution
for propagation and a 4th-order solution for error estimation. The method uses
6 stages per step.

The Butcher tableau coefficients are taken from the standard Fehlberg
formulation:

- Nodes (c): [0, 1/4, 3/8, 12/13, 1, 1/2]
- 5th-order weights (b_high): [16/135, 0, 6656/12825, 28561/56430, -9/50, 2/55]
- 4th-order weights (b_low): [25/216, 0, 1408/2565, 2197/4104, -1/5, 0]
"""

from __future__ import annotations

from collections.abc import Callable

from jax import Array
from jax.typing import ArrayLike

from odejax.integrators._tableau import embedded_rk
from odejax.integrators._types import Algorithm, StepResult

_C = (0.0, 1.0 / 4.0, 3.0 / 8.0, 12.0 / 13.0, 1.0, 1.0 / 2.0)

_A = (
    (),
    (1.0 / 4.0,),
    (3.0 / 32.0, 9.0 / 32.0),
    (1932.0 / 2197.0, -7200.0 / 2197.0, 7296.0 / 2197.0),
    (439.0 / 216.0, -8.0, 3680.0 / 513.0, -845.0 / 4104.0),
    (-8.0 / 27.0, 2.0, -3544.0 / 2565.0, 1859.0 / 4104.0, -11.0 / 40.0),
)

_B_HIGH = (16.0 / 135.0, 0.0, 6656.0 / 12825.0, 28561.0 / 56430.0, -9.0 / 50.0, 2.0 / 55.0)

_B_LOW = (25.0 / 216.0, 0.0, 1408.0 / 2565.0, 2197.0 / 4104.0, -1.0 / 5.0, 0.0)


def rkf45_step(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    k0: ArrayLike | None = None,
) -> StepResult:
    """Perform a single RKF45 trial step.

    Compatible with ``jax.jit`` and ``jax.vmap``.

    Args:
        dynamics: ODE right-hand side function ``f(t, x) -> dx/dt``.
        t: Current time.
        state: Current state vector.
        dt: Trial timestep. May be negative for backward integration.
        k0: Derivative at ``(t, state)`` if already known.

    Returns:
        StepResult: 5th-order candidate ``state`` and the embedded ``error``
        vector (5th minus 4th order).
    """
    state_high, error_vec, _ = embedded_rk(
        dynamics, t, state, dt, _C, _A, _B_HIGH, _B_LOW, k0=k0
    )
    return StepResult(state=state_high, error=error_vec)


def RKF45() -> Algorithm:
    """Adaptive Fehlberg 4(5) pair for any first-order problem."""

    def step(problem, t, x, dt, params, f0):
        return rkf45_step(problem.bind(params), t, x, dt, k0=f0)

    return Algorithm(name="RKF45", step=step, order=5, error_order=4, adaptive=True)
