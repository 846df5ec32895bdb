"""Adaptive step-size control utilities for embedded error estimators.

Provides the error-norm computation and step-size adjustment logic used by
the stepper core for every adaptive scheme. The algorithms follow the
standard embedded Runge-Kutta error control approach:

1. Compute a normalized error using mixed absolute/relative tolerances.
2. Accept the step if the normalized error is <= 1.0.
3. Predict the next step size from the error, the previous accepted error
   (PI control), and the estimator order.

Step sizes are handled as Python floats: time values must stay exact so
that steps can land bit-exactly on preset event times.
"""

from __future__ import annotations

import math

import jax.numpy as jnp
from jax import Array
from jax.typing import ArrayLike

from odejax.config import get_dtype
from odejax.integrators._types import SolverConfig


def compute_error_norm(
    error_vec: ArrayLike,
    state_new: ArrayLike,
    state_old: ArrayLike,
    abs_tol: float,
    rel_tol: float,
    norm: str = "max",
) -> Array:
    """Compute the normalized error norm for adaptive step-size control.

    Uses a mixed absolute/relative tolerance per component. The step is
    accepted when the returned value is <= 1.0.

    The per-component tolerance is:

    .. math::

        \\text{tol}_i = \\text{abs\\_tol} + \\text{rel\\_tol}
            \\cdot \\max(|y^{\\text{new}}_i|, |y^{\\text{old}}_i|)

    Args:
        error_vec: Difference between high-order and low-order solutions.
        state_new: High-order solution (candidate state).
        state_old: State at the beginning of the step.
        abs_tol: Absolute error tolerance.
        rel_tol: Relative error tolerance.
        norm: ``"max"`` for the infinity norm over components, ``"rms"`` for
            the root-mean-square.

    Returns:
        jax.Array: Scalar normalized error. Step is accepted if <= 1.0.

    Raises:
        ValueError: If *norm* is not ``"max"`` or ``"rms"``.
    """
    error_vec = jnp.asarray(error_vec, dtype=get_dtype())
    state_new = jnp.asarray(state_new, dtype=get_dtype())
    state_old = jnp.asarray(state_old, dtype=get_dtype())

    scale = abs_tol + rel_tol * jnp.maximum(jnp.abs(state_new), jnp.abs(state_old))
    ratio = jnp.abs(error_vec) / scale
    if norm == "max":
        return jnp.max(ratio)
    if norm == "rms":
        return jnp.sqrt(jnp.mean(ratio * ratio))
    raise ValueError(f"Unknown error norm {norm!r}. Must be 'max' or 'rms'")


def compute_next_step_size(
    error: float,
    h: float,
    order: float,
    safety_factor: float,
    min_scale_factor: float,
    max_scale_factor: float,
    min_step: float,
    max_step: float,
) -> float:
    """Compute the next step size with the elementary (integral) controller.

    Uses the standard optimal step-size formula:

    .. math::

        h_{\\text{next}} = |h| \\cdot S \\cdot
            \\left(\\frac{1}{\\text{error}}\\right)^{1/(p+1)}

    where *S* is the safety factor and *p* is the estimator order. The
    result is clamped by scale-factor bounds and absolute step-size bounds,
    and the sign of ``h`` is preserved for backward integration.

    Args:
        error: Normalized error from :func:`compute_error_norm`.
        h: Current step size (may be negative for backward integration).
        order: Order of the error estimator.
        safety_factor: Multiplicative safety factor (typically 0.9).
        min_scale_factor: Minimum allowed ratio ``|h_next| / |h|``.
        max_scale_factor: Maximum allowed ratio ``|h_next| / |h|``.
        min_step: Absolute minimum step size.
        max_step: Absolute maximum step size.

    Returns:
        float: Suggested next step size with same sign as ``h``.
    """
    if error > 0.0 and math.isfinite(error):
        scale = safety_factor * (1.0 / error) ** (1.0 / (order + 1.0))
    elif error > 0.0:
        scale = min_scale_factor
    else:
        scale = max_scale_factor

    scale = min(max(scale, min_scale_factor), max_scale_factor)
    abs_h_next = min(max(abs(h) * scale, min_step), max_step)
    return math.copysign(abs_h_next, h)


class StepSizeController:
    """Proportional-integral step-size controller.

    Holds the single piece of history PI control needs: the normalized error
    of the last accepted step. One controller instance belongs to exactly
    one integration run.

    Args:
        config: Run configuration providing factors, bounds and gains.
        error_order: Order of the scheme's error estimator.
    """

    def __init__(self, config: SolverConfig, error_order: int):
        if config.controller not in ("pi", "i"):
            raise ValueError(
                f"Unknown controller {config.controller!r}. Must be 'pi' or 'i'"
            )
        self.config = config
        self.k = float(error_order) + 1.0
        self.err_prev: float | None = None

    def _clamp(self, h: float, scale: float) -> float:
        c = self.config
        scale = min(max(scale, c.min_scale_factor), c.max_scale_factor)
        return math.copysign(min(max(abs(h) * scale, c.min_step), c.max_step), h)

    def accept(self, error: float, h: float) -> float:
        """Return the proposal for the step following an accepted step."""
        c = self.config
        # Exact steps (error == 0) grow by the maximum factor.
        err = max(error, 1e-10)
        err_prev, self.err_prev = self.err_prev, err
        if c.controller == "i" or err_prev is None:
            return compute_next_step_size(
                err, h, self.k - 1.0, c.safety_factor,
                c.min_scale_factor, c.max_scale_factor,
                c.min_step, c.max_step,
            )
        beta1 = c.pi_beta1 / self.k
        beta2 = c.pi_beta2 / self.k
        scale = c.safety_factor * err ** (-beta1) * err_prev ** beta2
        return self._clamp(h, scale)

    def reject(self, error: float, h: float) -> float:
        """Return the retry step size after a rejected step.

        Never grows the step, and never returns a magnitude above ``|h|``.
        """
        c = self.config
        if math.isfinite(error) and error > 0.0:
            scale = c.safety_factor * error ** (-1.0 / self.k)
        else:
            scale = c.min_scale_factor
        scale = min(max(scale, c.min_scale_factor), 1.0)
        return math.copysign(abs(h) * scale, h)


def initial_step_size(
    dynamics,
    t0: float,
    x0: ArrayLike,
    f0: ArrayLike,
    direction: float,
    order: int,
    abs_tol: float,
    rel_tol: float,
) -> float:
    """Choose a starting step size for an adaptive scheme.

    Implements the Hairer-Norsett-Wanner heuristic: a first guess from the
    ratio of state and derivative magnitudes, refined by an explicit Euler
    probe estimating the second derivative.

    Args:
        dynamics: ``f(t, x) -> dx/dt`` with parameters already bound.
        t0: Initial time.
        x0: Initial state.
        f0: Derivative at ``(t0, x0)``.
        direction: +1.0 for forward, -1.0 for backward integration.
        order: Order of the propagated solution.
        abs_tol: Absolute tolerance.
        rel_tol: Relative tolerance.

    Returns:
        float: Positive initial step size magnitude.
    """
    x0 = jnp.asarray(x0, dtype=get_dtype())
    f0 = jnp.asarray(f0, dtype=get_dtype())
    scale = abs_tol + jnp.abs(x0) * rel_tol

    d0 = float(jnp.sqrt(jnp.mean((x0 / scale) ** 2)))
    d1 = float(jnp.sqrt(jnp.mean((f0 / scale) ** 2)))
    if d0 < 1e-5 or d1 < 1e-5:
        h0 = 1e-6
    else:
        h0 = 0.01 * d0 / d1

    x1 = x0 + direction * h0 * f0
    f1 = dynamics(t0 + direction * h0, x1)
    d2 = float(jnp.sqrt(jnp.mean(((f1 - f0) / scale) ** 2))) / h0

    if d1 <= 1e-15 and d2 <= 1e-15:
        h1 = max(1e-6, h0 * 1e-3)
    else:
        h1 = (0.01 / max(d1, d2)) ** (1.0 / (order + 1.0))

    return min(100.0 * h0, h1)
