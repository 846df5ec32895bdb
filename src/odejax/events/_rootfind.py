"""Location of continuous event crossings inside an accepted step.

The condition is evaluated on the step's dense interpolant, never on fresh
right-hand side evaluations. The bracket is refined with the Illinois variant
of regula falsi, falling back to bisection whenever the secant point leaves
the bracket. The search is a bounded loop returning a :class:`RootResult`;
running out of iterations is reported, not raised.

The reported time is always the end of the final bracket on which the
condition has already crossed. The state handed to effects therefore lies on
the far side of the crossing, and the same crossing cannot be detected again
from the next step's left end.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import NamedTuple


class RootResult(NamedTuple):
    """Outcome of a bracketing root search.

    Attributes:
        t: Post-crossing end of the final bracket.
        converged: ``True`` if the bracket width fell below the tolerance.
        iterations: Number of condition evaluations spent.
    """

    t: float
    converged: bool
    iterations: int


def crosses(g_left: float, g_right: float, direction: int) -> bool:
    """Whether ``g`` changes sign from *g_left* to *g_right*.

    A zero at the left end never counts: that crossing belongs to the
    previous interval. A zero at the right end does count.

    Args:
        g_left: Condition value at the interval start.
        g_right: Condition value at the interval end.
        direction: ``+1`` upcrossings only, ``-1`` downcrossings only, ``0``
            both.
    """
    if g_left == 0.0 or g_left != g_left:
        return False
    if direction > 0 and g_left > 0.0:
        return False
    if direction < 0 and g_left < 0.0:
        return False
    s = 1.0 if g_left > 0.0 else -1.0
    return g_right * s <= 0.0


def find_root(
    g: Callable[[float], float],
    ta: float,
    tb: float,
    ga: float,
    gb: float,
    time_tol: float,
    max_iters: int,
) -> RootResult:
    """Shrink the bracket ``[ta, tb]`` around a sign change of *g*.

    ``ta`` must lie strictly on the pre-crossing side (``ga != 0``) and
    ``tb`` on the crossed side. ``tb`` may be smaller than ``ta`` for
    backward integration.

    Args:
        g: Scalar condition as a function of time.
        ta: Pre-crossing end.
        tb: Crossed end.
        ga: ``g(ta)``.
        gb: ``g(tb)``.
        time_tol: Target bracket width.
        max_iters: Evaluation bound.

    Returns:
        RootResult: ``tb`` of the final bracket.
    """
    s = 1.0 if ga > 0.0 else -1.0
    side = 0
    for it in range(max_iters):
        if abs(tb - ta) <= time_tol:
            return RootResult(tb, True, it)
        denom = gb - ga
        tm = tb - gb * (tb - ta) / denom if denom != 0.0 else 0.5 * (ta + tb)
        if not min(ta, tb) < tm < max(ta, tb):
            tm = 0.5 * (ta + tb)
        gm = float(g(tm))
        if gm * s <= 0.0:
            tb, gb = tm, gm
            if side == -1:
                ga *= 0.5
            side = -1
        else:
            ta, ga = tm, gm
            if side == 1:
                gb *= 0.5
            side = 1
    return RootResult(tb, abs(tb - ta) <= time_tol, max_iters)


def locate_crossing(
    g: Callable[[float], float],
    t_left: float,
    t_right: float,
    g_left: float,
    g_right: float,
    direction: int,
    interp_points: int,
    time_tol: float,
    max_iters: int,
) -> RootResult | None:
    """Find the first crossing of *g* in ``(t_left, t_right]``.

    The interval is first scanned at *interp_points* interior samples; the
    earliest sub-interval with a qualifying sign change is then refined with
    :func:`find_root`.

    Returns:
        RootResult | None: ``None`` if no qualifying crossing was seen.
    """
    h = t_right - t_left
    n = interp_points + 1
    prev_t, prev_g = t_left, g_left
    for k in range(1, n + 1):
        if k == n:
            tk, gk = t_right, g_right
        else:
            tk = t_left + h * k / n
            gk = float(g(tk))
        if crosses(prev_g, gk, direction):
            return find_root(g, prev_t, tk, prev_g, gk, time_tol, max_iters)
        prev_t, prev_g = tk, gk
    return None
