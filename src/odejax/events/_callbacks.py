"""Event kinds and ordered callback sets.

Three kinds of event interrupt continuous integration:

- :class:`ContinuousCallback` fires where a scalar condition crosses zero.
  The crossing is located inside the step on the dense interpolant and the
  step is cut there.
- :class:`DiscreteCallback` fires when its condition is truthy at the end of
  an accepted step. No localization; suited to resets where exact timing
  does not matter.
- :class:`PresetTimeCallback` fires at times known in advance. Each time is
  a hard ceiling for the step size, so the trajectory lands on it exactly.

Conditions are called as ``condition(t, x, params)``. Effects are called as
``effect(ctx)`` with the run's :class:`~odejax.problem.IntegratorContext`;
they may reassign ``ctx.u``, mutate ``ctx.params`` and call
``ctx.terminate()``.

Events are grouped in a :class:`CallbackSet`. Registration order is the only
tie-break when several events are due at the same instant, whatever their
kinds.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from jax import Array

Condition = Callable[[float, Array, Any], Any]
Effect = Callable[[Any], None]


def _check_effect(effect, required: bool) -> None:
    if effect is None:
        if required:
            raise TypeError("effect must be callable, got None")
        return
    if not callable(effect):
        raise TypeError(f"effect must be callable, got {type(effect).__name__}")


@dataclass(frozen=True)
class ContinuousCallback:
    """Event located at a zero crossing of ``condition``.

    Args:
        condition: Scalar function ``g(t, x, params)``.
        effect: ``effect(ctx)`` applied at the crossing; may be ``None`` for a
            purely terminal event.
        terminal: Stop the run after the effects due at the crossing.
        direction: ``+1`` fires only on upcrossings (``g`` from negative to
            non-negative), ``-1`` only on downcrossings, ``0`` on both.
        interp_points: Number of interior samples of ``g`` per step, used to
            catch a crossing pair that cancels out between the step ends.

    Raises:
        TypeError: If *condition* or *effect* are not callable.
        ValueError: If *direction* or *interp_points* are invalid.
    """

    condition: Condition
    effect: Effect | None = None
    terminal: bool = False
    direction: int = 0
    interp_points: int = 10

    kind: ClassVar[str] = "continuous"

    def __post_init__(self):
        if not callable(self.condition):
            raise TypeError("condition must be callable")
        _check_effect(self.effect, required=not self.terminal)
        if self.direction not in (-1, 0, 1):
            raise ValueError(f"direction must be -1, 0 or 1, got {self.direction!r}")
        if not isinstance(self.interp_points, int) or self.interp_points < 0:
            raise ValueError(
                f"interp_points must be a non-negative integer, got {self.interp_points!r}"
            )


@dataclass(frozen=True)
class DiscreteCallback:
    """Event tested once at the right end of every accepted step.

    Args:
        condition: ``condition(t, x, params)``; the event fires when truthy.
        effect: ``effect(ctx)``.
    """

    condition: Condition
    effect: Effect

    kind: ClassVar[str] = "discrete"

    def __post_init__(self):
        if not callable(self.condition):
            raise TypeError("condition must be callable")
        _check_effect(self.effect, required=True)


@dataclass(frozen=True)
class PresetTimeCallback:
    """Event at a fixed schedule of times.

    Times at or before the start of the span, and beyond its end, are never
    reached. Each reached time fires once.

    Args:
        times: Strictly ascending finite times.
        effect: ``effect(ctx)``.

    Raises:
        ValueError: If *times* is not strictly ascending or not finite.
    """

    times: Sequence[float]
    effect: Effect

    kind: ClassVar[str] = "preset"

    def __post_init__(self):
        _check_effect(self.effect, required=True)
        times = tuple(float(t) for t in self.times)
        for t in times:
            if not math.isfinite(t):
                raise ValueError(f"Preset times must be finite, got {t}")
        for a, b in zip(times, times[1:]):
            if not b > a:
                raise ValueError(
                    f"Preset times must be strictly ascending, got {a} followed by {b}"
                )
        object.__setattr__(self, "times", times)


Callback = Union[ContinuousCallback, DiscreteCallback, PresetTimeCallback]
_CALLBACK_TYPES = (ContinuousCallback, DiscreteCallback, PresetTimeCallback)


class CallbackSet:
    """Ordered collection of events.

    Nested sets are flattened, ``None`` entries are skipped. Sets combine
    with ``+`` or :meth:`merge`, preserving order.

    Examples:
        ```python
        from odejax.events import CallbackSet, PresetTimeCallback
        kick = PresetTimeCallback([2.0], lambda ctx: None)
        cbs = CallbackSet(kick) + CallbackSet()
        len(cbs)  # 1
        ```
    """

    def __init__(self, *callbacks: Callback | CallbackSet | None):
        flat: list[Callback] = []
        for cb in callbacks:
            if cb is None:
                continue
            if isinstance(cb, CallbackSet):
                flat.extend(cb.callbacks)
            elif isinstance(cb, _CALLBACK_TYPES):
                flat.append(cb)
            else:
                raise TypeError(f"Not a callback: {type(cb).__name__}")
        self._callbacks = tuple(flat)

    @classmethod
    def merge(cls, *sets: Callback | CallbackSet | None) -> CallbackSet:
        """Concatenate callbacks and callback sets in the given order."""
        return cls(*sets)

    @property
    def callbacks(self) -> tuple[Callback, ...]:
        return self._callbacks

    def indexed(self, kind: str) -> list[tuple[int, Callback]]:
        """Return ``(registration_index, callback)`` pairs of one kind."""
        return [(i, cb) for i, cb in enumerate(self._callbacks) if cb.kind == kind]

    def __add__(self, other: Callback | CallbackSet) -> CallbackSet:
        if not isinstance(other, (CallbackSet, *_CALLBACK_TYPES)):
            return NotImplemented
        return CallbackSet(self, other)

    def __iter__(self) -> Iterator[Callback]:
        return iter(self._callbacks)

    def __len__(self) -> int:
        return len(self._callbacks)

    def __getitem__(self, index: int) -> Callback:
        return self._callbacks[index]

    def __repr__(self) -> str:
        kinds = ", ".join(cb.kind for cb in self._callbacks)
        return f"CallbackSet([{kinds}])"


def as_callback_set(callbacks: Callback | CallbackSet | Iterable[Callback] | None) -> CallbackSet:
    """Coerce ``None``, a single callback, or an iterable to a :class:`CallbackSet`."""
    if callbacks is None:
        return CallbackSet()
    if isinstance(callbacks, CallbackSet):
        return callbacks
    if isinstance(callbacks, _CALLBACK_TYPES):
        return CallbackSet(callbacks)
    return CallbackSet(*callbacks)
