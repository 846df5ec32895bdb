"""Problem definitions and the per-run integrator context.

An :class:`ODEProblem` bundles everything that defines a trajectory: the
right-hand side evaluator(s), the initial state, the time span and the
parameter block. Three forms are supported, distinguished by which fields are
set:

- **plain**: ``rhs(t, x, params) -> dx/dt``;
- **partitioned**: a :class:`StatePartition` plus
  ``momentum_rhs(t, q, params) -> dp/dt`` and
  ``position_rhs(t, p, params) -> dq/dt``, used by symplectic and Nyström
  schemes (see :func:`partitioned_problem`, :func:`second_order_problem`);
- **split**: ``linear_operator`` ``L``, optional ``affine_term`` ``b`` and
  ``nonlinear_rhs(t, x, params)``, used by IMEX schemes
  (see :func:`split_problem`).

Every form exposes :meth:`ODEProblem.derivative`, the full first-order
derivative, so any explicit scheme, dense output and event location work on
all of them.

Problems are immutable and validated eagerly at construction. The parameter
block is never mutated in place: each integration run deep-copies it into
its own :class:`IntegratorContext`.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype


@dataclass(frozen=True)
class StatePartition:
    """Split of the state vector into momentum and position halves.

    The layout is ``[momentum, position]``. The partition is fixed for the
    lifetime of a trajectory.

    Args:
        n_momentum: Number of momentum (or velocity) components.
        n_position: Number of position components.

    Examples:
        ```python
        import jax.numpy as jnp
        from odejax.problem import StatePartition
        part = StatePartition(2, 2)
        p, q = part.split(jnp.array([0.0, 1.0, 1.0, 0.0]))
        ```
    """

    n_momentum: int
    n_position: int

    def __post_init__(self):
        for name in ("n_momentum", "n_position"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    @property
    def size(self) -> int:
        return self.n_momentum + self.n_position

    @property
    def momentum(self) -> slice:
        return slice(0, self.n_momentum)

    @property
    def position(self) -> slice:
        return slice(self.n_momentum, self.size)

    def split(self, x: ArrayLike) -> tuple[Array, Array]:
        """Return ``(momentum, position)`` views of *x*."""
        x = jnp.asarray(x)
        return x[self.momentum], x[self.position]

    def join(self, momentum: ArrayLike, position: ArrayLike) -> Array:
        """Concatenate momentum and position halves into one state vector."""
        return jnp.concatenate([jnp.atleast_1d(momentum), jnp.atleast_1d(position)])


def _velocity_identity(t, v, params):
    return v


@dataclass(frozen=True)
class ODEProblem:
    """An initial value problem.

    Args:
        rhs: ``rhs(t, x, params) -> dx/dt`` for plain problems.
        x0: Initial state, a non-empty 1-D array.
        tspan: ``(t0, tf)``. ``tf < t0`` integrates backwards.
        params: Parameter block handed to every evaluator. Any object;
            effects may mutate the per-run copy.
        partition: Momentum/position split for partitioned problems.
        momentum_rhs: ``F(t, q, params) -> dp/dt``.
        position_rhs: ``G(t, p, params) -> dq/dt``.
        second_order: ``True`` when ``dq/dt`` is the momentum half itself
            (velocity), as required by Nyström schemes.
        linear_operator: ``L`` of shape ``(n, n)`` for split problems.
        affine_term: Constant ``b`` of shape ``(n,)`` added to ``L x``.
        nonlinear_rhs: ``N(t, x, params)`` for split problems.

    Raises:
        ValueError: If the state, span, or the combination of evaluators is
            inconsistent.
        TypeError: If an evaluator is not callable.
    """

    rhs: Callable[[Any, Array, Any], Array] | None
    x0: ArrayLike
    tspan: tuple[float, float]
    params: Any = None
    partition: StatePartition | None = None
    momentum_rhs: Callable[[Any, Array, Any], Array] | None = None
    position_rhs: Callable[[Any, Array, Any], Array] | None = None
    second_order: bool = False
    linear_operator: ArrayLike | None = None
    affine_term: ArrayLike | None = None
    nonlinear_rhs: Callable[[Any, Array, Any], Array] | None = None

    def __post_init__(self):
        dtype = get_dtype()
        x0 = jnp.asarray(self.x0, dtype=dtype)
        if x0.ndim != 1 or x0.shape[0] == 0:
            raise ValueError(f"x0 must be a non-empty 1-D array, got shape {x0.shape}")
        if not bool(jnp.all(jnp.isfinite(x0))):
            raise ValueError("x0 contains non-finite values")
        object.__setattr__(self, "x0", x0)

        if len(self.tspan) != 2:
            raise ValueError(f"tspan must be (t0, tf), got {self.tspan!r}")
        t0, tf = float(self.tspan[0]), float(self.tspan[1])
        if not (math.isfinite(t0) and math.isfinite(tf)):
            raise ValueError(f"tspan must be finite, got {self.tspan!r}")
        object.__setattr__(self, "tspan", (t0, tf))

        for name in ("rhs", "momentum_rhs", "position_rhs", "nonlinear_rhs"):
            fn = getattr(self, name)
            if fn is not None and not callable(fn):
                raise TypeError(f"{name} must be callable, got {type(fn).__name__}")

        n = x0.shape[0]
        forms = 0
        if self.rhs is not None:
            forms += 1

        if self.partition is not None or self.momentum_rhs is not None or self.position_rhs is not None:
            if self.partition is None or self.momentum_rhs is None or self.position_rhs is None:
                raise ValueError(
                    "Partitioned problems need partition, momentum_rhs and position_rhs"
                )
            if self.partition.size != n:
                raise ValueError(
                    f"Partition size {self.partition.size} does not match state size {n}"
                )
            if self.second_order and self.partition.n_momentum != self.partition.n_position:
                raise ValueError("Second-order problems need equal momentum and position sizes")
            forms += 1
        elif self.second_order:
            raise ValueError("second_order requires a state partition")

        if self.linear_operator is not None or self.nonlinear_rhs is not None:
            if self.linear_operator is None or self.nonlinear_rhs is None:
                raise ValueError("Split problems need both linear_operator and nonlinear_rhs")
            L = jnp.asarray(self.linear_operator, dtype=dtype)
            if L.shape != (n, n):
                raise ValueError(f"linear_operator must have shape ({n}, {n}), got {L.shape}")
            object.__setattr__(self, "linear_operator", L)
            if self.affine_term is not None:
                b = jnp.asarray(self.affine_term, dtype=dtype)
                if b.shape != (n,):
                    raise ValueError(f"affine_term must have shape ({n},), got {b.shape}")
                object.__setattr__(self, "affine_term", b)
            forms += 1
        elif self.affine_term is not None:
            raise ValueError("affine_term requires a linear_operator")

        if forms == 0:
            raise ValueError("No right-hand side given")
        if forms > 1:
            raise ValueError("Give exactly one of rhs, a partitioned pair, or a split pair")

    @property
    def is_partitioned(self) -> bool:
        return self.partition is not None

    @property
    def is_split(self) -> bool:
        return self.linear_operator is not None

    @property
    def direction(self) -> float:
        """+1.0 forward, -1.0 backward, 0.0 for an empty span."""
        t0, tf = self.tspan
        if tf > t0:
            return 1.0
        if tf < t0:
            return -1.0
        return 0.0

    def derivative(self, t, x: Array, params) -> Array:
        """Full first-order derivative ``dx/dt`` for any problem form."""
        if self.rhs is not None:
            return self.rhs(t, x, params)
        if self.partition is not None:
            p, q = self.partition.split(x)
            return self.partition.join(
                self.momentum_rhs(t, q, params), self.position_rhs(t, p, params)
            )
        dx = self.linear_operator @ x + self.nonlinear_rhs(t, x, params)
        if self.affine_term is not None:
            dx = dx + self.affine_term
        return dx

    def bind(self, params) -> Callable[[Any, Array], Array]:
        """Return ``f(t, x)`` with *params* bound, for step kernels."""

        def dynamics(t, x):
            return self.derivative(t, x, params)

        return dynamics


def partitioned_problem(
    momentum_rhs: Callable,
    position_rhs: Callable,
    p0: ArrayLike,
    q0: ArrayLike,
    tspan: tuple[float, float],
    params: Any = None,
) -> ODEProblem:
    """Build a partitioned problem ``dp/dt = F(t, q)``, ``dq/dt = G(t, p)``.

    Args:
        momentum_rhs: ``F(t, q, params) -> dp/dt``.
        position_rhs: ``G(t, p, params) -> dq/dt``.
        p0: Initial momentum.
        q0: Initial position.
        tspan: ``(t0, tf)``.
        params: Parameter block.

    Returns:
        ODEProblem: State laid out as ``[p0, q0]``.
    """
    p0 = jnp.atleast_1d(jnp.asarray(p0, dtype=get_dtype()))
    q0 = jnp.atleast_1d(jnp.asarray(q0, dtype=get_dtype()))
    partition = StatePartition(int(p0.shape[0]), int(q0.shape[0]))
    return ODEProblem(
        rhs=None,
        x0=partition.join(p0, q0),
        tspan=tspan,
        params=params,
        partition=partition,
        momentum_rhs=momentum_rhs,
        position_rhs=position_rhs,
    )


def second_order_problem(
    acceleration: Callable,
    v0: ArrayLike,
    q0: ArrayLike,
    tspan: tuple[float, float],
    params: Any = None,
) -> ODEProblem:
    """Build a second-order problem ``q'' = a(t, q)``.

    The state is laid out as ``[v, q]``; ``dq/dt = v``.

    Args:
        acceleration: ``a(t, q, params) -> q''``. Must not depend on ``v``.
        v0: Initial velocity.
        q0: Initial position.
        tspan: ``(t0, tf)``.
        params: Parameter block.

    Returns:
        ODEProblem: A partitioned problem with ``second_order=True``.
    """
    v0 = jnp.atleast_1d(jnp.asarray(v0, dtype=get_dtype()))
    q0 = jnp.atleast_1d(jnp.asarray(q0, dtype=get_dtype()))
    partition = StatePartition(int(v0.shape[0]), int(q0.shape[0]))
    return ODEProblem(
        rhs=None,
        x0=partition.join(v0, q0),
        tspan=tspan,
        params=params,
        partition=partition,
        momentum_rhs=acceleration,
        position_rhs=_velocity_identity,
        second_order=True,
    )


def split_problem(
    linear_operator: ArrayLike,
    nonlinear_rhs: Callable,
    x0: ArrayLike,
    tspan: tuple[float, float],
    params: Any = None,
    affine_term: ArrayLike | None = None,
) -> ODEProblem:
    """Build a split problem ``dx/dt = L x + b + N(t, x)`` for IMEX schemes.

    Args:
        linear_operator: ``L`` of shape ``(n, n)``.
        nonlinear_rhs: ``N(t, x, params)``.
        x0: Initial state.
        tspan: ``(t0, tf)``.
        params: Parameter block.
        affine_term: Optional constant ``b``.

    Returns:
        ODEProblem: A split problem.
    """
    return ODEProblem(
        rhs=None,
        x0=x0,
        tspan=tspan,
        params=params,
        linear_operator=linear_operator,
        affine_term=affine_term,
        nonlinear_rhs=nonlinear_rhs,
    )


class IntegratorContext:
    """Mutable view of a run handed to event effects.

    The stepper core owns exactly one context per run and only passes it to
    effects between steps. Effects may reassign :attr:`u`, mutate or
    reassign :attr:`params`, and call :meth:`terminate`.

    Attributes:
        t: Current time (read by effects, never changed by them).
        params: The run's private copy of the parameter block.
        dt: Step size that will be proposed next.
        direction: +1.0 forward, -1.0 backward.
    """

    def __init__(self, t: float, u: Array, params: Any, dt: float, direction: float):
        self.t = t
        self._u = u
        self.params = params
        self.dt = dt
        self.direction = direction
        self._terminate = False

    @property
    def u(self) -> Array:
        """Current state vector."""
        return self._u

    @u.setter
    def u(self, value: ArrayLike):
        value = jnp.asarray(value, dtype=get_dtype())
        if value.shape != self._u.shape:
            raise ValueError(
                f"State shape is fixed at {self._u.shape}, got {value.shape}"
            )
        self._u = value

    def terminate(self) -> None:
        """Stop the run after the effects due at the current instant."""
        self._terminate = True

    @property
    def terminated(self) -> bool:
        return self._terminate
