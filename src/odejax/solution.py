"""Integration results: return codes, event records and the solution buffer.

A :class:`Solution` is filled by exactly one integration run. While the run
is in progress the stepper core appends accepted points; when the run ends it
is frozen and its arrays become read-only views of the trajectory.

Between grid points the trajectory is reconstructed with the cubic Hermite
interpolant of the step that produced the segment. When an event effect or a
projection moves the state at a grid point, the segment keeps the pre-jump
value as its right limit, so dense queries inside the segment follow the
continuous solution while a query exactly at the grid time returns the
post-jump state.
"""

from __future__ import annotations

import bisect
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import NamedTuple

import jax.numpy as jnp
import numpy as np
from jax import Array
from jax.typing import ArrayLike

from odejax.interpolation import hermite_interpolate


class ReturnCode(Enum):
    """Outcome of an integration run.

    ``SUCCESS`` and ``TERMINATED`` are normal ends. ``DT_TOO_SMALL``,
    ``MAX_RETRIES_EXCEEDED``, ``UNSTABLE`` and ``MAX_STEPS_EXCEEDED`` abort
    the run and leave a partial solution. ``EVENT_ROOT_FIND_FAILURE`` and
    ``PROJECTION_FAILURE`` are warnings: they only ever appear in
    :attr:`Solution.warnings`.
    """

    SUCCESS = "Success"
    TERMINATED = "Terminated"
    DT_TOO_SMALL = "DtTooSmall"
    MAX_RETRIES_EXCEEDED = "MaxRetriesExceeded"
    UNSTABLE = "Unstable"
    MAX_STEPS_EXCEEDED = "MaxStepsExceeded"
    EVENT_ROOT_FIND_FAILURE = "EventRootFindFailure"
    PROJECTION_FAILURE = "ProjectionFailure"

    @property
    def is_warning(self) -> bool:
        return self in (ReturnCode.EVENT_ROOT_FIND_FAILURE, ReturnCode.PROJECTION_FAILURE)

    @property
    def is_failure(self) -> bool:
        return self in (
            ReturnCode.DT_TOO_SMALL,
            ReturnCode.MAX_RETRIES_EXCEEDED,
            ReturnCode.UNSTABLE,
            ReturnCode.MAX_STEPS_EXCEEDED,
        )

    def __str__(self) -> str:
        return self.value


class EventRecord(NamedTuple):
    """One applied event effect.

    Attributes:
        t: Time at which the effect was applied.
        index: Registration index of the event in its callback set.
        kind: ``"continuous"``, ``"discrete"`` or ``"preset"``.
        converged: ``False`` if the root search for a continuous event hit
            its iteration bound; the best estimate was used.
    """

    t: float
    index: int
    kind: str
    converged: bool = True


@dataclass
class SolverStats:
    """Counters accumulated over a run."""

    accepted: int = 0
    rejected: int = 0
    events: int = 0
    projections: int = 0
    projection_failures: int = 0


class Solution:
    """Accepted trajectory of one integration run.

    Attributes:
        problem: The problem that was integrated.
        algorithm: Name of the stepping scheme.
        retcode: Final :class:`ReturnCode` (``None`` while running).
        warnings: Warning codes raised during the run.
        events: Applied events in application order.
        stats: Step and event counters.
    """

    def __init__(self, problem, algorithm: str, direction: float = 1.0):
        self.problem = problem
        self.algorithm = algorithm
        self.retcode: ReturnCode | None = None
        self.warnings: frozenset[ReturnCode] | set[ReturnCode] = set()
        self.events: tuple[EventRecord, ...] | list[EventRecord] = []
        self.stats = SolverStats()
        self._direction = -1.0 if direction < 0 else 1.0
        self._t: list[float] = []
        self._keys: list[float] = []
        self._u: list[Array] = []
        self._du: list[Array] = []
        self._u_left: list[Array] = []
        self._du_left: list[Array] = []
        self._projection_failed: list[bool] = []
        self._frozen = False
        self._arrays: dict[str, object] = {}

    # ── building (stepper core only) ─────────────────────────────

    def _append(
        self,
        t: float,
        u: Array,
        du: Array,
        u_left: Array | None = None,
        du_left: Array | None = None,
        projection_failed: bool = False,
    ) -> None:
        if self._frozen:
            raise RuntimeError("Solution is frozen; the run has ended")
        key = self._direction * t
        if self._keys and key <= self._keys[-1]:
            raise ValueError(
                f"Time {t} is not strictly after {self._t[-1]} in the integration direction"
            )
        self._t.append(float(t))
        self._keys.append(key)
        self._u.append(u)
        self._du.append(du)
        self._u_left.append(u if u_left is None else u_left)
        self._du_left.append(du if du_left is None else du_left)
        self._projection_failed.append(bool(projection_failed))

    def _warn(self, code: ReturnCode) -> None:
        self.warnings.add(code)

    def _record_event(self, record: EventRecord) -> None:
        self.events.append(record)
        self.stats.events += 1

    def _finalize(self, retcode: ReturnCode) -> Solution:
        self.retcode = retcode
        self.warnings = frozenset(self.warnings)
        self.events = tuple(self.events)
        self._frozen = True
        return self

    # ── queries ──────────────────────────────────────────────────

    def _array(self, name: str, build):
        if not self._frozen:
            return build()
        if name not in self._arrays:
            self._arrays[name] = build()
        return self._arrays[name]

    @property
    def t(self) -> np.ndarray:
        """Grid times as a float64 array, exactly as stepped to."""
        return self._array("t", lambda: np.asarray(self._t, dtype=np.float64))

    @property
    def u(self) -> Array:
        """States at the grid times, shape ``(len(self), n)``."""
        return self._array("u", lambda: jnp.stack(self._u))

    @property
    def du(self) -> Array:
        """Derivatives at the grid times, shape ``(len(self), n)``."""
        return self._array("du", lambda: jnp.stack(self._du))

    @property
    def projection_failed(self) -> np.ndarray:
        """Per-entry flag set where manifold projection did not converge."""
        return self._array(
            "projection_failed", lambda: np.asarray(self._projection_failed, dtype=bool)
        )

    @property
    def successful(self) -> bool:
        """``True`` for ``SUCCESS`` and ``TERMINATED``."""
        return self.retcode in (ReturnCode.SUCCESS, ReturnCode.TERMINATED)

    @property
    def t_final(self) -> float:
        return self._t[-1]

    @property
    def u_final(self) -> Array:
        return self._u[-1]

    def __len__(self) -> int:
        return len(self._t)

    def __repr__(self) -> str:
        span = f"[{self._t[0]}, {self._t[-1]}]" if self._t else "[]"
        return (
            f"Solution(algorithm={self.algorithm}, retcode={self.retcode}, "
            f"points={len(self)}, span={span})"
        )

    def at(self, t: float) -> Array:
        """Return the state at time *t*.

        Grid times return the stored (post-event) state; other times inside
        the achieved span are interpolated on their segment.

        Raises:
            ValueError: If *t* lies outside the achieved span.
        """
        t = float(t)
        key = self._direction * t
        if not self._keys or key < self._keys[0] or key > self._keys[-1]:
            raise ValueError(f"Time {t} is outside the solution span")
        i = bisect.bisect_left(self._keys, key)
        if self._keys[i] == key:
            return self._u[i]
        return hermite_interpolate(
            self._t[i - 1], self._u[i - 1], self._du[i - 1],
            self._t[i], self._u_left[i], self._du_left[i],
            t,
        )

    def at_times(self, ts: ArrayLike) -> Array:
        """Return states at several times, stacked along the first axis."""
        return jnp.stack([self.at(float(t)) for t in np.asarray(ts).ravel()])

    def components(self, indices: int | Sequence[int]) -> Array:
        """Return the selected state components at every grid point.

        Args:
            indices: One component index or a sequence of them.

        Returns:
            jax.Array: Shape ``(len(self),)`` for a single index, else
            ``(len(self), len(indices))``.
        """
        if isinstance(indices, int):
            return self.u[:, indices]
        return self.u[:, jnp.asarray(list(indices), dtype=jnp.int32)]
