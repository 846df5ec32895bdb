"""Dormand-Prince 5(4) adaptive integrator (DP54).

Implements the Dormand-Prince embedded Runge-Kutta method with a 5th-order
solution for propagation and a 4th-order solution for error estimation. The
method uses 7 stages per step.

The Dormand-Prince method has the First-Same-As-Last (FSAL) property: the
7th stage is the derivative at the new state. It is returned as
``StepResult.derivative`` so the stepper core can reuse it for dense output
and as the first stage of the next step without another evaluation.

The Butcher tableau coefficients are the standard Dormand-Prince values:

- Nodes (c): [0, 1/5, 3/10, 4/5, 8/9, 1, 1]
- 5th-order weights (b_high): [35/384, 0, 500/1113, 125/192, -2187/6784, 11/84, 0]
- 4th-order weights (b_low): [5179/57600, 0, 7571/16695, 393/640, -92097/339200,
  187/2100, 1/40]
"""

from __future__ import annotations

from collections.abc import Callable

from jax import Array
from jax.typing import ArrayLike

from odejax.integrators._tableau import embedded_rk
from odejax.integrators._types import Algorithm, StepResult

_C = (0.0, 1.0 / 5.0, 3.0 / 10.0, 4.0 / 5.0, 8.0 / 9.0, 1.0, 1.0)

_A = (
    (),
    (1.0 / 5.0,),
    (3.0 / 40.0, 9.0 / 40.0),
    (44.0 / 45.0, -56.0 / 15.0, 32.0 / 9.0),
    (19372.0 / 6561.0, -25360.0 / 2187.0, 64448.0 / 6561.0, -212.0 / 729.0),
    (9017.0 / 3168.0, -355.0 / 33.0, 46732.0 / 5247.0, 49.0 / 176.0, -5103.0 / 18656.0),
    (35.0 / 384.0, 0.0, 500.0 / 1113.0, 125.0 / 192.0, -2187.0 / 6784.0, 11.0 / 84.0),
)

# Last coupling row equals the 5th-order weights (FSAL).
_B_HIGH = _A[6] + (0.0,)

_B_LOW = (
    5179.0 / 57600.0,
    0.0,
    7571.0 / 16695.0,
    393.0 / 640.0,
    -92097.0 / 339200.0,
    187.0 / 2100.0,
    1.0 / 40.0,
)


def dp54_step(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    k0: ArrayLike | None = None,
) -> StepResult:
    """Perform a single DP54 trial step.

    Compatible with ``jax.jit`` and ``jax.vmap``.

    Args:
        dynamics: ODE right-hand side function ``f(t, x) -> dx/dt``.
        t: Current time.
        state: Current state vector.
        dt: Trial timestep. May be negative for backward integration.
        k0: Derivative at ``(t, state)`` if already known (typically the
            FSAL stage of the previous step).

    Returns:
        StepResult: 5th-order candidate ``state``, embedded ``error`` vector,
        and the FSAL ``derivative`` at the candidate state.

    Examples:
        ```python
        import jax.numpy as jnp
        from odejax.integrators import dp54_step
        def harmonic(t, x):
            return jnp.array([x[1], -x[0]])
        result = dp54_step(harmonic, 0.0, jnp.array([1.0, 0.0]), 0.1)
        result.state  # ~[cos(0.1), -sin(0.1)]
        ```
    """
    state_high, error_vec, stages = embedded_rk(
        dynamics, t, state, dt, _C, _A, _B_HIGH, _B_LOW, k0=k0
    )
    return StepResult(state=state_high, error=error_vec, derivative=stages[6])


def DP54() -> Algorithm:
    """Adaptive Dormand-Prince 5(4) pair; the general-purpose default."""

    def step(problem, t, x, dt, params, f0):
        return dp54_step(problem.bind(params), t, x, dt, k0=f0)

    return Algorithm(name="DP54", step=step, order=5, error_order=4, adaptive=True)
