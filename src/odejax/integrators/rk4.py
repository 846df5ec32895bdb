"""Classic 4th-order Runge-Kutta integrator (RK4).

Implements the standard four-stage, 4th-order explicit Runge-Kutta method.
This is a fixed-step method with no error estimate: the stepper core
advances it with the constant step size given in the run configuration,
shortened only to land on stops.

The Butcher tableau for RK4 is:

.. math::

    \\begin{array}{c|cccc}
    0   &     &     &     &   \\\\
    1/2 & 1/2 &     &     &   \\\\
    1/2 &  0  & 1/2 &     &   \\\\
    1   &  0  &  0  &  1  &   \\\\
    \\hline
        & 1/6 & 1/3 & 1/3 & 1/6
    \\end{array}
"""

from __future__ import annotations

from collections.abc import Callable

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype
from odejax.integrators._types import Algorithm, StepResult


def rk4_step(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    k0: ArrayLike | None = None,
) -> StepResult:
    """Perform a single RK4 integration step.

    Advances the state from time ``t`` to ``t + dt``. Compatible with
    ``jax.jit`` and ``jax.vmap``.

    Args:
        dynamics: ODE right-hand side function ``f(t, x) -> dx/dt``.
        t: Current time.
        state: Current state vector.
        dt: Timestep to take. May be negative for backward integration.
        k0: Derivative at ``(t, state)`` if already known; saves one
            evaluation.

    Returns:
        StepResult: ``state`` at ``t + dt``; ``error`` and ``derivative``
        are ``None``.

    Examples:
        ```python
        import jax.numpy as jnp
        from odejax.integrators import rk4_step
        def harmonic(t, x):
            return jnp.array([x[1], -x[0]])
        result = rk4_step(harmonic, 0.0, jnp.array([1.0, 0.0]), 0.01)
        result.state  # ~[cos(0.01), -sin(0.01)]
        ```
    """
    dtype = get_dtype()
    t = jnp.asarray(t, dtype=dtype)
    state = jnp.asarray(state, dtype=dtype)
    dt = jnp.asarray(dt, dtype=dtype)

    k1 = dynamics(t, state) if k0 is None else jnp.asarray(k0, dtype=dtype)
    k2 = dynamics(t + 0.5 * dt, state + 0.5 * dt * k1)
    k3 = dynamics(t + 0.5 * dt, state + 0.5 * dt * k2)
    k4 = dynamics(t + dt, state + dt * k3)

    state_new = state + (dt / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)

    return StepResult(state=state_new)


def RK4() -> Algorithm:
    """Classic fixed-step RK4 for any first-order problem."""

    def step(problem, t, x, dt, params, f0):
        return rk4_step(problem.bind(params), t, x, dt, k0=f0)

    return Algorithm(name="RK4", step=step, order=4)
