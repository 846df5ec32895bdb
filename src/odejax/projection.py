"""Manifold projection onto conserved-quantity constraints.

After an accepted step the numerical state drifts off the manifold
``g(x) = 0`` defined by the problem's invariants (energy, angular momentum,
norm of a quaternion, ...). Projection moves it back to a nearby point on the
manifold with a Newton-type iteration

.. math::

    x_{k+1} = x_k - M^{-1} J^T \\left(J M^{-1} J^T\\right)^{-1} g(x_k),
    \\qquad J = \\partial g / \\partial x \\,(x_k)

which is the minimum-norm correction in the metric ``M`` (identity by
default). The Jacobian comes from ``jax.jacfwd`` unless one is supplied.

The iteration is a bounded loop returning a :class:`ProjectionResult`.
Failure to converge keeps the unprojected state; the stepper core flags the
solution entry and carries on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import NamedTuple

import jax
import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype

logger = logging.getLogger(__name__)


class ProjectionResult(NamedTuple):
    """Outcome of a projection.

    Attributes:
        state: Projected state, or the input state if not converged.
        converged: ``True`` if the residual infinity norm reached the
            tolerance.
        iterations: Newton updates applied (0 for an already-satisfying
            input).
        residual_norm: Infinity norm of the residual at the returned
            iterate (at the last iterate tried, on failure).
    """

    state: Array
    converged: bool
    iterations: int
    residual_norm: float


def project(
    x: ArrayLike,
    residual: Callable[[Array], Array],
    jacobian: Callable[[Array], Array] | None = None,
    metric: ArrayLike | None = None,
    abs_tol: float = 1e-10,
    max_iters: int = 20,
) -> ProjectionResult:
    """Project *x* onto ``residual(x) = 0``.

    An input that already satisfies the constraints to within *abs_tol* is
    returned unchanged, so projection is idempotent.

    Args:
        x: State to correct.
        residual: ``g(x) -> array`` of constraint residuals.
        jacobian: ``J(x) -> array`` of shape ``(m, n)``; defaults to
            ``jax.jacfwd(residual)``.
        metric: Symmetric positive definite ``(n, n)`` matrix defining
            "nearest"; identity if ``None``.
        abs_tol: Convergence tolerance on the residual infinity norm.
        max_iters: Maximum number of Newton updates.

    Returns:
        ProjectionResult: Projected state and convergence information.

    Examples:
        ```python
        import jax.numpy as jnp
        from odejax.projection import project
        res = project(jnp.array([1.1, 0.0]), lambda x: jnp.sum(x**2) - 1.0)
        res.state  # ~[1.0, 0.0]
        ```
    """
    dtype = get_dtype()
    x0 = jnp.asarray(x, dtype=dtype)

    def g(xi):
        return jnp.atleast_1d(residual(xi))

    jac = jacobian if jacobian is not None else jax.jacfwd(g)
    M = None if metric is None else jnp.asarray(metric, dtype=dtype)

    xk = x0
    norm = float("inf")
    for k in range(max_iters + 1):
        r = g(xk)
        norm = float(jnp.max(jnp.abs(r)))
        if norm != norm:
            break
        if norm <= abs_tol:
            return ProjectionResult(xk, True, k, norm)
        if k == max_iters:
            break
        J = jnp.atleast_2d(jac(xk))
        MinvJT = J.T if M is None else jnp.linalg.solve(M, J.T)
        lam = jnp.linalg.solve(J @ MinvJT, r)
        xk = xk - MinvJT @ lam
        if not bool(jnp.all(jnp.isfinite(xk))):
            break

    return ProjectionResult(x0, False, max_iters, norm)


class ManifoldProjection:
    """Constraint set and projection cadence for a run.

    Args:
        *residuals: Residual functions ``g_i(x) -> scalar or array``; their
            outputs are concatenated.
        every: Project after every ``every``-th accepted step.
        abs_tol: Residual tolerance.
        max_iters: Newton iteration bound.
        metric: Optional SPD matrix for the projection metric.
        jacobian: Optional Jacobian of the concatenated residual.

    Raises:
        TypeError: If a residual is not callable.
        ValueError: If *every*, *abs_tol* or *max_iters* are invalid.
    """

    def __init__(
        self,
        *residuals: Callable[[Array], ArrayLike],
        every: int = 1,
        abs_tol: float = 1e-10,
        max_iters: int = 20,
        metric: ArrayLike | None = None,
        jacobian: Callable[[Array], Array] | None = None,
    ):
        for fn in residuals:
            if not callable(fn):
                raise TypeError(f"Residual must be callable, got {type(fn).__name__}")
        if not isinstance(every, int) or every < 1:
            raise ValueError(f"every must be a positive integer, got {every!r}")
        if not abs_tol > 0.0:
            raise ValueError(f"abs_tol must be positive, got {abs_tol!r}")
        if not isinstance(max_iters, int) or max_iters < 1:
            raise ValueError(f"max_iters must be a positive integer, got {max_iters!r}")
        if metric is not None:
            metric = jnp.asarray(metric, dtype=get_dtype())
            if metric.ndim != 2 or metric.shape[0] != metric.shape[1]:
                raise ValueError(f"metric must be a square matrix, got shape {metric.shape}")
        self.residuals = tuple(residuals)
        self.every = every
        self.abs_tol = abs_tol
        self.max_iters = max_iters
        self.metric = metric
        self.jacobian = jacobian

    def __len__(self) -> int:
        return len(self.residuals)

    def residual(self, x: Array) -> Array:
        """Concatenated residual of all constraints."""
        return jnp.concatenate([jnp.atleast_1d(g(x)) for g in self.residuals])

    def due(self, accepted_steps: int) -> bool:
        """Whether projection runs after the given accepted-step count."""
        return len(self.residuals) > 0 and accepted_steps % self.every == 0

    def __call__(self, x: ArrayLike) -> ProjectionResult:
        result = project(
            x,
            self.residual,
            jacobian=self.jacobian,
            metric=self.metric,
            abs_tol=self.abs_tol,
            max_iters=self.max_iters,
        )
        if not result.converged:
            logger.debug(
                "Projection did not converge: residual %.3e after %d iterations",
                result.residual_norm, result.iterations,
            )
        return result
