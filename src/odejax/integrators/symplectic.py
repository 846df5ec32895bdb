"""Symplectic partitioned integrators for separable Hamiltonian systems.

For a Hamiltonian ``H(p, q) = T(p) + V(q)`` the equations of motion split
into ``dp/dt = F(t, q)`` and ``dq/dt = G(t, p)``. Composing exact flows of the
two halves gives a symplectic map: phase-space volume is preserved and, at a
constant step size, the energy error stays bounded instead of drifting.

That property belongs to constant-step composition, so these schemes produce
no error estimate and the stepper core runs them at the configured fixed
step. Only the final step before a stop (end of span or preset event time)
is shortened.

Available schemes:

- :func:`leapfrog_step` -- velocity Verlet (kick-drift-kick), 2nd order.
- :func:`yoshida4_step` -- Yoshida triple-jump composition of leapfrog,
  4th order.
"""

from __future__ import annotations

from collections.abc import Callable

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype
from odejax.integrators._types import Algorithm, StepResult

_CBRT2 = 2.0 ** (1.0 / 3.0)
_W1 = 1.0 / (2.0 - _CBRT2)
_W0 = -_CBRT2 / (2.0 - _CBRT2)


def leapfrog_step(
    force: Callable[[ArrayLike, ArrayLike], Array],
    velocity: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    momentum: ArrayLike,
    position: ArrayLike,
    dt: ArrayLike,
    force0: ArrayLike | None = None,
) -> tuple[Array, Array, Array]:
    """Perform one kick-drift-kick leapfrog step.

    .. math::

        p_{1/2} = p_0 + \\tfrac{h}{2} F(t, q_0), \\quad
        q_1 = q_0 + h\\, G(t + \\tfrac{h}{2}, p_{1/2}), \\quad
        p_1 = p_{1/2} + \\tfrac{h}{2} F(t + h, q_1)

    Args:
        force: ``F(t, q) -> dp/dt``.
        velocity: ``G(t, p) -> dq/dt``.
        t: Current time.
        momentum: Current momentum ``p``.
        position: Current position ``q``.
        dt: Step size (may be negative).
        force0: ``F(t, q)`` if already known.

    Returns:
        tuple: ``(momentum_new, position_new, force_new)`` where
        ``force_new = F(t + dt, position_new)`` can seed the next step.
    """
    dtype = get_dtype()
    t = jnp.asarray(t, dtype=dtype)
    p = jnp.asarray(momentum, dtype=dtype)
    q = jnp.asarray(position, dtype=dtype)
    h = jnp.asarray(dt, dtype=dtype)

    f0 = force(t, q) if force0 is None else jnp.asarray(force0, dtype=dtype)
    p_half = p + 0.5 * h * f0
    q_new = q + h * velocity(t + 0.5 * h, p_half)
    f1 = force(t + h, q_new)
    p_new = p_half + 0.5 * h * f1
    return p_new, q_new, f1


def yoshida4_step(
    force: Callable[[ArrayLike, ArrayLike], Array],
    velocity: Callable[[ArrayLike, ArrayLike], Array],
    t: ArrayLike,
    momentum: ArrayLike,
    position: ArrayLike,
    dt: ArrayLike,
    force0: ArrayLike | None = None,
) -> tuple[Array, Array, Array]:
    """Perform one 4th-order Yoshida step.

    Three leapfrog substeps of sizes ``w1*h``, ``w0*h``, ``w1*h`` with
    ``w1 = 1 / (2 - 2^(1/3))`` and ``w0 = 1 - 2*w1``. The middle substep runs
    backwards in time.

    Args:
        force: ``F(t, q) -> dp/dt``.
        velocity: ``G(t, p) -> dq/dt``.
        t: Current time.
        momentum: Current momentum ``p``.
        position: Current position ``q``.
        dt: Step size (may be negative).
        force0: ``F(t, q)`` if already known.

    Returns:
        tuple: ``(momentum_new, position_new, force_new)``.
    """
    dtype = get_dtype()
    t = jnp.asarray(t, dtype=dtype)
    h = jnp.asarray(dt, dtype=dtype)

    p, q, f = momentum, position, force0
    ti = t
    for w in (_W1, _W0, _W1):
        p, q, f = leapfrog_step(force, velocity, ti, p, q, w * h, force0=f)
        ti = ti + w * h
    return p, q, f


def _partitioned(name: str, kernel, order: int) -> Algorithm:
    def step(problem, t, x, dt, params, f0):
        partition = problem.partition
        p, q = partition.split(x)

        def force(ti, qi):
            return problem.momentum_rhs(ti, qi, params)

        def velocity(ti, pi):
            return problem.position_rhs(ti, pi, params)

        force0 = None if f0 is None else f0[partition.momentum]
        p_new, q_new, f_new = kernel(force, velocity, t, p, q, dt, force0=force0)
        derivative = partition.join(f_new, velocity(t + dt, p_new))
        return StepResult(state=partition.join(p_new, q_new), derivative=derivative)

    return Algorithm(name=name, step=step, order=order, needs_partition=True)


def Leapfrog() -> Algorithm:
    """Fixed-step velocity Verlet for partitioned problems."""
    return _partitioned("Leapfrog", leapfrog_step, 2)


def Yoshida4() -> Algorithm:
    """Fixed-step 4th-order Yoshida composition for partitioned problems."""
    return _partitioned("Yoshida4", yoshida4_step, 4)
