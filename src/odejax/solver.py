"""Stepper core: the adaptive time-marching loop.

:func:`solve` and :func:`advance` drive one trajectory from the start of the
span to its end (or to a terminal event or a failure). Each iteration

1. proposes a step, capped by the maximum step size and shortened to land
   exactly on the next stop (end of span or pending preset event time);
2. asks the algorithm for a candidate state and, for adaptive schemes,
   judges its error estimate, shrinking and retrying on rejection;
3. searches the accepted interval for continuous event crossings on the
   step's dense interpolant and cuts the step at the earliest one;
4. applies every event due at the new right end, in registration order;
5. projects onto the constraint manifold if configured;
6. appends the point to the :class:`~odejax.solution.Solution`.

Numerical failures never raise: they end the run with a failure
:class:`~odejax.solution.ReturnCode` and the partial solution. Configuration
errors raise ``ValueError``/``TypeError`` before the first step.

Runs are strictly sequential in time. Independent runs share nothing
mutable and can be distributed over threads with :func:`solve_ensemble`.
"""

from __future__ import annotations

import copy
import logging
import math
from collections import deque
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor

import jax.numpy as jnp
from jax import Array

from odejax.config import get_time_rounding
from odejax.events import CallbackSet, as_callback_set, locate_crossing
from odejax.integrators._adaptive import (
    StepSizeController,
    compute_error_norm,
    initial_step_size,
)
from odejax.integrators._types import Algorithm, SolverConfig
from odejax.interpolation import hermite_interpolate
from odejax.problem import IntegratorContext, ODEProblem
from odejax.projection import ManifoldProjection
from odejax.solution import EventRecord, ReturnCode, Solution

logger = logging.getLogger(__name__)


def _is_finite(x: Array) -> bool:
    return bool(jnp.all(jnp.isfinite(x)))


def validate(
    problem: ODEProblem,
    algorithm: Algorithm,
    span: tuple[float, float],
    config: SolverConfig,
) -> tuple[float, float]:
    """Reject inconsistent run configurations before any stepping.

    Returns:
        tuple: The span as two floats.

    Raises:
        TypeError: If *problem*, *algorithm* or *config* have the wrong type.
        ValueError: If the combination cannot be integrated.
    """
    if not isinstance(problem, ODEProblem):
        raise TypeError(f"Expected an ODEProblem, got {type(problem).__name__}")
    if not isinstance(algorithm, Algorithm):
        raise TypeError(f"Expected an Algorithm, got {type(algorithm).__name__}")
    if not isinstance(config, SolverConfig):
        raise TypeError(f"Expected a SolverConfig, got {type(config).__name__}")

    if len(span) != 2:
        raise ValueError(f"span must be (t0, tf), got {span!r}")
    t0, tf = float(span[0]), float(span[1])
    if not (math.isfinite(t0) and math.isfinite(tf)):
        raise ValueError(f"span must be finite, got {span!r}")

    if algorithm.needs_partition and not problem.is_partitioned:
        raise ValueError(f"{algorithm.name} needs a partitioned problem")
    if algorithm.needs_second_order and not problem.second_order:
        raise ValueError(f"{algorithm.name} needs a second-order problem")
    if algorithm.needs_linear_operator and not problem.is_split:
        raise ValueError(f"{algorithm.name} needs a split problem with a linear operator")
    if tf < t0 and not algorithm.supports_backward:
        raise ValueError(
            f"{algorithm.name} only integrates forward; span ({t0}, {tf}) is descending"
        )
    if not algorithm.adaptive and config.dt is None and tf != t0:
        raise ValueError(f"{algorithm.name} is a fixed-step scheme; set SolverConfig.dt")

    if config.abs_tol < 0.0 or config.rel_tol < 0.0:
        raise ValueError("Tolerances must be non-negative")
    if algorithm.adaptive and config.abs_tol == 0.0 and config.rel_tol == 0.0:
        raise ValueError("abs_tol and rel_tol cannot both be zero")
    if config.dt is not None and (not math.isfinite(config.dt) or config.dt == 0.0):
        raise ValueError(f"dt must be finite and non-zero, got {config.dt!r}")
    if not 0.0 < config.min_step <= config.max_step:
        raise ValueError("Need 0 < min_step <= max_step")
    if config.dt is not None and abs(config.dt) < config.min_step:
        raise ValueError(
            f"dt {config.dt!r} is below min_step {config.min_step!r}"
        )
    if not 0.0 < config.min_scale_factor <= 1.0 <= config.max_scale_factor:
        raise ValueError("Need 0 < min_scale_factor <= 1 <= max_scale_factor")
    if not 0.0 < config.safety_factor <= 1.0:
        raise ValueError("safety_factor must be in (0, 1]")
    if config.max_step_attempts < 1 or config.max_steps < 1:
        raise ValueError("max_step_attempts and max_steps must be positive")
    if config.norm not in ("max", "rms"):
        raise ValueError(f"Unknown error norm {config.norm!r}")
    if config.controller not in ("pi", "i"):
        raise ValueError(f"Unknown controller {config.controller!r}")
    if not config.event_time_tol > 0.0 or config.event_max_iters < 1:
        raise ValueError("event_time_tol and event_max_iters must be positive")
    return t0, tf


class _Run:
    """State of one integration run. Never shared between runs."""

    def __init__(
        self,
        problem: ODEProblem,
        algorithm: Algorithm,
        span: tuple[float, float],
        config: SolverConfig,
        callbacks: CallbackSet,
        constraints: ManifoldProjection | None,
    ):
        self.problem = problem
        self.algorithm = algorithm
        self.config = config
        self.t0, self.tf = span
        self.direction = -1.0 if self.tf < self.t0 else 1.0
        self.callbacks = callbacks
        self.constraints = constraints

        self.continuous = callbacks.indexed("continuous")
        self.discrete = callbacks.indexed("discrete")
        self.preset = callbacks.indexed("preset")

        d = self.direction
        self.pending: dict[int, deque[float]] = {}
        for i, cb in self.preset:
            reachable = [
                s for s in cb.times
                if d * (s - self.t0) > 0.0 and d * (self.tf - s) >= 0.0
            ]
            self.pending[i] = deque(sorted(reachable, key=lambda s: d * s))

        self.controller = (
            StepSizeController(config, algorithm.error_order or algorithm.order)
            if algorithm.adaptive
            else None
        )

        self.ctx = IntegratorContext(
            t=self.t0,
            u=problem.x0,
            params=copy.deepcopy(problem.params),
            dt=0.0,
            direction=self.direction,
        )
        self.sol = Solution(problem, algorithm.name, self.direction)
        self.t = self.t0
        self.x = problem.x0
        self.f = problem.derivative(self.t0, self.x, self.ctx.params)
        self.g_prev: dict[int, float] = {}
        self.last_root: dict[int, float] = {}

    # ── helpers ──────────────────────────────────────────────────

    def _derivative(self, t: float, x: Array) -> Array:
        return self.problem.derivative(t, x, self.ctx.params)

    def _condition(self, cb, t: float, x: Array) -> float:
        return float(cb.condition(t, x, self.ctx.params))

    def _refresh_conditions(self) -> None:
        for i, cb in self.continuous:
            self.g_prev[i] = self._condition(cb, self.t, self.x)

    def _next_stop(self) -> float:
        stop = self.tf
        d = self.direction
        for times in self.pending.values():
            if times and d * times[0] < d * stop:
                stop = times[0]
        return stop

    def _clip(self, h: float, stop: float) -> tuple[float, float, bool]:
        """Return ``(t_new, h_used, on_stop)`` for a proposed step *h*."""
        t = self.t
        t_try = t + h
        tol = get_time_rounding() * max(abs(t), abs(stop), 1.0)
        if self.direction * (stop - t_try) <= tol:
            return stop, stop - t, True
        return t_try, h, False

    def _initial_dt(self) -> float:
        c = self.config
        if c.dt is not None:
            h = abs(c.dt)
        else:
            h = initial_step_size(
                self.problem.bind(self.ctx.params),
                self.t0,
                self.x,
                self.f,
                self.direction,
                self.algorithm.order,
                c.abs_tol,
                c.rel_tol,
            )
            h = max(h, c.min_step)
        return self.direction * min(h, c.max_step)

    # ── one step ─────────────────────────────────────────────────

    def _attempt(self, dt: float):
        """Run the accept/reject loop.

        Returns:
            ``(ReturnCode, None)`` on failure, else
            ``(None, (t_new, x_new, f_new, on_stop, dt_next))``.
        """
        c = self.config
        stop = self._next_stop()
        h = math.copysign(min(abs(dt), c.max_step), self.direction)
        attempts = 0
        while True:
            t_new, h_used, on_stop = self._clip(h, stop)
            result = self.algorithm.step(
                self.problem, self.t, self.x, h_used, self.ctx.params, self.f
            )
            x_new = result.state
            if not _is_finite(x_new):
                logger.warning("Non-finite state produced at t=%s", t_new)
                return ReturnCode.UNSTABLE, None

            if self.controller is None:
                dt_next = h
                break

            err = float(
                compute_error_norm(
                    result.error, x_new, self.x, c.abs_tol, c.rel_tol, c.norm
                )
            )
            if err <= 1.0:
                dt_next = self.controller.accept(err, h_used)
                if attempts > 0:
                    # No growth straight after a rejection.
                    dt_next = math.copysign(min(abs(dt_next), abs(h_used)), h_used)
                if on_stop and abs(h_used) < abs(h):
                    dt_next = math.copysign(max(abs(dt_next), abs(h)), h)
                break

            self.sol.stats.rejected += 1
            attempts += 1
            logger.debug("Rejected step at t=%s, dt=%s, error=%.3e", self.t, h_used, err)
            if attempts >= c.max_step_attempts:
                logger.warning(
                    "Step at t=%s rejected %d times in a row", self.t, attempts
                )
                return ReturnCode.MAX_RETRIES_EXCEEDED, None
            h = self.controller.reject(err, h_used)
            if abs(h) < c.min_step:
                logger.warning(
                    "Step size %.3e at t=%s fell below min_step %.3e",
                    abs(h), self.t, c.min_step,
                )
                return ReturnCode.DT_TOO_SMALL, None

        f_new = result.derivative
        if f_new is None:
            f_new = self._derivative(t_new, x_new)
        return None, (t_new, x_new, f_new, on_stop, dt_next)

    def _locate_continuous(self, t_new, x_new, f_new):
        """Find continuous crossings in ``(t, t_new]``.

        Returns:
            ``(t_new, x_new, f_new, due)`` with the step cut at the earliest
            crossing; ``due`` maps registration index to :class:`RootResult`.
        """
        if not self.continuous:
            return t_new, x_new, f_new, {}

        c = self.config
        t, x, f = self.t, self.x, self.f
        params = self.ctx.params

        def interp(s):
            return hermite_interpolate(t, x, f, t_new, x_new, f_new, s)

        roots = {}
        for i, cb in self.continuous:
            g_right = self._condition(cb, t_new, x_new)

            def g(s, cb=cb):
                return float(cb.condition(s, interp(s), params))

            last = self.last_root.get(i)
            t_left, g_left = t, self.g_prev[i]
            while True:
                root = locate_crossing(
                    g, t_left, t_new, g_left, g_right,
                    cb.direction, cb.interp_points, c.event_time_tol, c.event_max_iters,
                )
                if root is None:
                    break
                if last is None or abs(root.t - last) > c.event_time_tol:
                    roots[i] = root
                    break
                # Already fired there; keep searching the rest of the step.
                if root.t == t_new:
                    break
                t_left, g_left = root.t, g(root.t)

        if not roots:
            return t_new, x_new, f_new, {}

        d = self.direction
        t_event = min((r.t for r in roots.values()), key=lambda s: d * s)
        due = {
            i: r for i, r in roots.items() if abs(r.t - t_event) <= c.event_time_tol
        }
        if t_event != t_new:
            x_new = interp(t_event)
            f_new = self._derivative(t_event, x_new)
            t_new = t_event
        return t_new, x_new, f_new, due

    def _apply_events(self, t_new, x_new, on_stop, continuous_due, dt_next):
        """Apply every event due at *t_new* in registration order.

        Returns:
            The list of applied ``(index, kind, converged)`` entries.
        """
        due = []
        for i, root in continuous_due.items():
            due.append((i, "continuous", root.converged))
        for i, cb in self.discrete:
            if cb.condition(t_new, x_new, self.ctx.params):
                due.append((i, "discrete", True))
        if on_stop:
            for i, times in self.pending.items():
                if times and times[0] == t_new:
                    times.popleft()
                    due.append((i, "preset", True))
        if not due:
            return due

        due.sort(key=lambda entry: entry[0])
        ctx = self.ctx
        ctx.t = t_new
        ctx._u = x_new
        ctx.dt = dt_next
        for i, kind, converged in due:
            cb = self.callbacks[i]
            if cb.effect is not None:
                cb.effect(ctx)
            if kind == "continuous":
                self.last_root[i] = t_new
                if cb.terminal:
                    ctx.terminate()
                if not converged:
                    self.sol._warn(ReturnCode.EVENT_ROOT_FIND_FAILURE)
                    logger.warning(
                        "Root search for event %d did not converge; using t=%s", i, t_new
                    )
            self.sol._record_event(EventRecord(t_new, i, kind, converged))
            logger.debug("Applied %s event %d at t=%s", kind, i, t_new)
        return due

    def step(self, dt: float) -> tuple[ReturnCode | None, float]:
        """Advance by one accepted step.

        Returns:
            ``(retcode, dt_next)`` where ``retcode`` is ``None`` while the
            run continues.
        """
        failure, accepted = self._attempt(dt)
        if failure is not None:
            return failure, dt
        t_new, x_new, f_new, on_stop, dt_next = accepted

        t_new, x_new, f_new, continuous_due = self._locate_continuous(t_new, x_new, f_new)
        if continuous_due:
            on_stop = on_stop and t_new == self._next_stop()

        x_left, f_left = x_new, f_new
        fired = self._apply_events(t_new, x_new, on_stop, continuous_due, dt_next)
        if fired:
            x_new = self.ctx.u
            if not _is_finite(x_new):
                logger.warning("Event effect produced a non-finite state at t=%s", t_new)
                return ReturnCode.UNSTABLE, dt_next
            f_new = self._derivative(t_new, x_new)
            if self.ctx.dt != dt_next and self.ctx.dt != 0.0:
                dt_next = math.copysign(abs(self.ctx.dt), self.direction)

        stats = self.sol.stats
        stats.accepted += 1
        projection_failed = False
        if self.constraints is not None and self.constraints.due(stats.accepted):
            stats.projections += 1
            projected = self.constraints(x_new)
            if projected.converged:
                if projected.iterations > 0:
                    x_new = projected.state
                    f_new = self._derivative(t_new, x_new)
            else:
                projection_failed = True
                stats.projection_failures += 1
                self.sol._warn(ReturnCode.PROJECTION_FAILURE)
                logger.warning(
                    "Projection failed at t=%s (residual %.3e); keeping unprojected state",
                    t_new, projected.residual_norm,
                )

        moved = x_new is not x_left
        self.sol._append(
            t_new,
            x_new,
            f_new,
            u_left=x_left if moved else None,
            du_left=f_left if moved else None,
            projection_failed=projection_failed,
        )
        self.t, self.x, self.f = t_new, x_new, f_new
        self.ctx.t = t_new
        self.ctx._u = x_new
        self._refresh_conditions()

        if self.ctx.terminated:
            return ReturnCode.TERMINATED, dt_next
        if t_new == self.tf:
            return ReturnCode.SUCCESS, dt_next
        return None, dt_next

    def run(self) -> Solution:
        sol = self.sol
        sol._append(self.t, self.x, self.f)
        logger.info(
            "Integrating with %s over [%s, %s]", self.algorithm.name, self.t0, self.tf
        )
        if self.t0 == self.tf:
            return sol._finalize(ReturnCode.SUCCESS)

        self._refresh_conditions()
        dt = self._initial_dt()
        retcode = None
        while retcode is None:
            if sol.stats.accepted >= self.config.max_steps:
                logger.warning("Reached max_steps=%d at t=%s", self.config.max_steps, self.t)
                retcode = ReturnCode.MAX_STEPS_EXCEEDED
                break
            self.ctx.dt = dt
            retcode, dt = self.step(dt)

        log = logger.warning if retcode.is_failure else logger.info
        log(
            "Finished with %s at t=%s: %d accepted, %d rejected steps, %d events",
            retcode, self.t, sol.stats.accepted, sol.stats.rejected, sol.stats.events,
        )
        return sol._finalize(retcode)


def advance(
    problem: ODEProblem,
    algorithm: Algorithm,
    span: tuple[float, float],
    config: SolverConfig | None = None,
    callbacks=None,
    constraints: ManifoldProjection | None = None,
) -> Solution:
    """Integrate *problem* from ``span[0]`` to ``span[1]``.

    The initial state ``problem.x0`` is taken to be the state at
    ``span[0]``.

    Args:
        problem: Problem to integrate.
        algorithm: Stepping scheme, e.g. ``DP54()``.
        span: ``(t0, tf)``.
        config: Tolerances and step control; defaults to
            :class:`SolverConfig`.
        callbacks: A callback, a :class:`~odejax.events.CallbackSet`, an
            iterable of callbacks, or ``None``.
        constraints: Optional :class:`~odejax.projection.ManifoldProjection`.

    Returns:
        Solution: Frozen solution with its :class:`ReturnCode`.

    Raises:
        ValueError: On configuration errors, before any stepping.
        TypeError: On arguments of the wrong type.
    """
    if config is None:
        config = SolverConfig()
    span = validate(problem, algorithm, span, config)
    callbacks = as_callback_set(callbacks)
    if constraints is not None and not isinstance(constraints, ManifoldProjection):
        raise TypeError(
            f"constraints must be a ManifoldProjection, got {type(constraints).__name__}"
        )
    return _Run(problem, algorithm, span, config, callbacks, constraints).run()


def solve(
    problem: ODEProblem,
    algorithm: Algorithm,
    config: SolverConfig | None = None,
    callbacks=None,
    constraints: ManifoldProjection | None = None,
) -> Solution:
    """Integrate *problem* over its own time span.

    Equivalent to ``advance(problem, algorithm, problem.tspan, ...)``.

    Examples:
        ```python
        import jax.numpy as jnp
        from odejax import ODEProblem, DP54, SolverConfig, solve
        prob = ODEProblem(lambda t, x, p: -x, jnp.array([1.0]), (0.0, 1.0))
        sol = solve(prob, DP54(), SolverConfig(abs_tol=1e-8, rel_tol=1e-8))
        sol.at(0.5)  # ~[exp(-0.5)]
        ```
    """
    if not isinstance(problem, ODEProblem):
        raise TypeError(f"Expected an ODEProblem, got {type(problem).__name__}")
    return advance(problem, algorithm, problem.tspan, config, callbacks, constraints)


def solve_ensemble(
    problems: Iterable[ODEProblem],
    algorithm: Algorithm,
    config: SolverConfig | None = None,
    callbacks=None,
    constraints: ManifoldProjection | None = None,
    max_workers: int | None = None,
) -> list[Solution]:
    """Integrate independent problems concurrently on a thread pool.

    Every run owns its parameter block copy, context and solution; callbacks
    and constraints are immutable and shared safely.

    Returns:
        list[Solution]: One solution per problem, in input order.

    Raises:
        ValueError: If any problem fails validation; nothing is run.
    """
    if config is None:
        config = SolverConfig()
    problems = list(problems)
    for problem in problems:
        if not isinstance(problem, ODEProblem):
            raise TypeError(f"Expected an ODEProblem, got {type(problem).__name__}")
        validate(problem, algorithm, problem.tspan, config)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = [
            pool.submit(solve, problem, algorithm, config, callbacks, constraints)
            for problem in problems
        ]
        return [future.result() for future in futures]
