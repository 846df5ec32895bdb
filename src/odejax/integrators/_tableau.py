"""Generic evaluation of explicit embedded Runge-Kutta tableaus.

The tableau is given as Python tuples; the stage loop is unrolled at trace
time, so the resulting computation is the same straight-line code a
hand-written scheme would produce.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype


def embedded_rk(
    dynamics: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    state: ArrayLike,
    dt: ArrayLike,
    c: Sequence[float],
    a: Sequence[Sequence[float]],
    b_high: Sequence[float],
    b_low: Sequence[float],
    k0: ArrayLike | None = None,
) -> tuple[Array, Array, list[Array]]:
    """Evaluate one step of an explicit embedded Runge-Kutta pair.

    Args:
        dynamics: ODE right-hand side ``f(t, x) -> dx/dt``.
        t: Current time.
        state: Current state vector.
        dt: Step size (may be negative).
        c: Stage nodes.
        a: Lower-triangular coupling rows; ``a[i]`` has ``i`` entries.
        b_high: Weights of the propagated solution.
        b_low: Weights of the embedded solution.
        k0: First stage derivative, if already known.

    Returns:
        tuple: ``(state_high, error_vec, stages)`` where ``error_vec`` is
        ``state_high - state_low``.
    """
    dtype = get_dtype()
    t = jnp.asarray(t, dtype=dtype)
    state = jnp.asarray(state, dtype=dtype)
    dt = jnp.asarray(dt, dtype=dtype)

    stages: list[Array] = []
    for i, row in enumerate(a):
        if i == 0 and k0 is not None:
            stages.append(jnp.asarray(k0, dtype=dtype))
            continue
        incr = jnp.zeros_like(state)
        for j, aij in enumerate(row):
            if aij != 0.0:
                incr = incr + aij * stages[j]
        stages.append(dynamics(t + c[i] * dt, state + dt * incr))

    high = jnp.zeros_like(state)
    err = jnp.zeros_like(state)
    for i, (bh, bl) in enumerate(zip(b_high, b_low)):
        if bh != 0.0:
            high = high + bh * stages[i]
        if bh != bl:
            err = err + (bh - bl) * stages[i]

    return state + dt * high, dt * err, stages
