"""Type definitions for numerical integrators.

Provides the core data types shared by every stepping scheme and by the
stepper core:

- :class:`StepResult`: Output of every step kernel, containing the candidate
  state, the embedded error vector (if the scheme has one), and the
  derivative at the candidate state when it comes for free.
- :class:`SolverConfig`: Tolerances and step-size control settings for a
  single integration run.
- :class:`Algorithm`: Capability record describing a stepping scheme: its
  step function, its order, and which problem inputs it needs.

All types are :class:`~typing.NamedTuple` instances, which JAX treats as
pytrees automatically, so step kernels returning a :class:`StepResult` can be
wrapped in ``jax.jit`` and ``jax.vmap``.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from typing import TYPE_CHECKING, NamedTuple, Optional

from jax import Array

if TYPE_CHECKING:
    from odejax.problem import ODEProblem


class StepResult(NamedTuple):
    """Result of a single trial step.

    Step kernels never accept or reject a step themselves; they return a
    candidate which the stepper core judges against the configured
    tolerances.

    Attributes:
        state: Candidate state vector at time ``t + dt``.
        error: Embedded error vector (high-order minus low-order solution),
            or ``None`` for schemes without an error estimate.
        derivative: Right-hand side evaluated at ``(t + dt, state)`` when the
            scheme computes it anyway (First-Same-As-Last), else ``None``.
    """

    state: Array
    error: Optional[Array] = None
    derivative: Optional[Array] = None


class SolverConfig(NamedTuple):
    """Configuration for a single integration run.

    Default values give a reasonable starting point for smooth, non-stiff
    problems of moderate size.

    Attributes:
        abs_tol: Absolute error tolerance per component.
        rel_tol: Relative error tolerance per component.
        dt: Initial step size for adaptive schemes, and the step size for
            fixed-step schemes. ``None`` lets adaptive schemes choose one;
            fixed-step schemes require it. The sign is ignored: the
            direction is taken from the time span. Its magnitude must not be
            below ``min_step``.
        safety_factor: Multiplicative safety factor applied to step-size
            predictions.
        min_scale_factor: Minimum allowed ratio ``|dt_next| / |dt|``.
        max_scale_factor: Maximum allowed ratio ``|dt_next| / |dt|``.
        min_step: Smallest step size the controller may propose. Needing a
            smaller step aborts the run with ``DT_TOO_SMALL``.
        max_step: Largest step size ever attempted.
        max_step_attempts: Number of consecutive rejections tolerated for one
            step before the run aborts with ``MAX_RETRIES_EXCEEDED``.
        max_steps: Number of accepted steps after which the run aborts with
            ``MAX_STEPS_EXCEEDED``.
        controller: ``"pi"`` for proportional-integral control, ``"i"`` for
            the classic integral (elementary) controller.
        pi_beta1: Proportional exponent numerator; divided by
            ``error_order + 1``.
        pi_beta2: Integral exponent numerator; divided by
            ``error_order + 1``.
        norm: ``"max"`` (infinity norm) or ``"rms"`` reduction of the scaled
            error vector.
        event_time_tol: Bracket width at which the continuous event root
            search stops.
        event_max_iters: Iteration bound of the continuous event root search.
    """

    abs_tol: float = 1e-6
    rel_tol: float = 1e-3
    dt: Optional[float] = None
    safety_factor: float = 0.9
    min_scale_factor: float = 0.2
    max_scale_factor: float = 10.0
    min_step: float = 1e-12
    max_step: float = math.inf
    max_step_attempts: int = 10
    max_steps: int = 100_000
    controller: str = "pi"
    pi_beta1: float = 0.7
    pi_beta2: float = 0.4
    norm: str = "max"
    event_time_tol: float = 1e-10
    event_max_iters: int = 100


StepFunction = Callable[
    ["ODEProblem", float, Array, float, object, Optional[Array]], StepResult
]


class Algorithm(NamedTuple):
    """Capability record of a stepping scheme.

    The stepper core never inspects the concrete scheme; it only reads these
    flags to validate the problem and decide whether to run the adaptive
    accept/reject branch.

    Attributes:
        name: Human-readable scheme name.
        step: ``step(problem, t, x, dt, params, f0) -> StepResult``. ``f0`` is
            the derivative at ``(t, x)`` if the caller has it, else ``None``.
        order: Order of the propagated solution.
        error_order: Order of the embedded error estimator, or ``None``.
        adaptive: Whether the scheme produces an error estimate and should
            be driven by the step-size controller.
        needs_partition: Requires a momentum/position state partition.
        needs_second_order: Requires ``dq/dt = v`` (a second-order problem).
        needs_linear_operator: Requires a linear operator for IMEX splitting.
        supports_backward: Whether integration with a descending span is
            allowed.
    """

    name: str
    step: StepFunction
    order: int
    error_order: Optional[int] = None
    adaptive: bool = False
    needs_partition: bool = False
    needs_second_order: bool = False
    needs_linear_operator: bool = False
    supports_backward: bool = True
