"""Tests for the solution buffer, dense output and return codes."""

import jax.numpy as jnp
import numpy as np
import pytest

from odejax.interpolation import hermite_interpolate
from odejax.solution import EventRecord, ReturnCode, Solution


def _cubic(t):
    return jnp.array([t**3 - 2.0 * t, 0.5 * t**2])


def _cubic_dot(t):
    return jnp.array([3.0 * t**2 - 2.0, t])


def _filled(times, direction=1.0):
    sol = Solution(problem=None, algorithm="test", direction=direction)
    for t in times:
        sol._append(t, _cubic(t), _cubic_dot(t))
    return sol


# ──────────────────────────────────────────────
# Hermite interpolation
# ──────────────────────────────────────────────

class TestHermite:
    def test_reproduces_cubic(self):
        t0, t1 = 0.5, 2.0
        for t in (0.5, 0.7, 1.3, 2.0):
            x = hermite_interpolate(t0, _cubic(t0), _cubic_dot(t0), t1, _cubic(t1), _cubic_dot(t1), t)
            assert jnp.allclose(x, _cubic(t), atol=1e-12)

    def test_backward_segment(self):
        t0, t1 = 2.0, 0.5
        x = hermite_interpolate(t0, _cubic(t0), _cubic_dot(t0), t1, _cubic(t1), _cubic_dot(t1), 1.1)
        assert jnp.allclose(x, _cubic(1.1), atol=1e-12)

    def test_degenerate_segment(self):
        x = hermite_interpolate(1.0, _cubic(1.0), _cubic_dot(1.0), 1.0, _cubic(1.0), _cubic_dot(1.0), 1.0)
        assert jnp.allclose(x, _cubic(1.0))


# ──────────────────────────────────────────────
# Solution
# ──────────────────────────────────────────────

class TestSolution:
    def test_arrays(self):
        sol = _filled([0.0, 0.5, 1.0])._finalize(ReturnCode.SUCCESS)
        assert sol.t.dtype == np.float64
        assert np.array_equal(sol.t, np.array([0.0, 0.5, 1.0]))
        assert sol.u.shape == (3, 2)
        assert sol.du.shape == (3, 2)
        assert len(sol) == 3
        assert sol.successful
        assert sol.t_final == 1.0
        assert jnp.allclose(sol.u_final, _cubic(1.0))

    def test_at_grid_point_exact(self):
        sol = _filled([0.0, 0.5, 1.0])._finalize(ReturnCode.SUCCESS)
        assert jnp.array_equal(sol.at(0.5), sol.u[1])

    def test_at_interpolates(self):
        sol = _filled([0.0, 0.5, 1.0])._finalize(ReturnCode.SUCCESS)
        assert jnp.allclose(sol.at(0.3), _cubic(0.3), atol=1e-12)
        assert jnp.allclose(sol.at(0.77), _cubic(0.77), atol=1e-12)

    def test_at_outside_span_raises(self):
        sol = _filled([0.0, 1.0])._finalize(ReturnCode.SUCCESS)
        with pytest.raises(ValueError, match="outside"):
            sol.at(1.5)
        with pytest.raises(ValueError, match="outside"):
            sol.at(-0.1)

    def test_at_times(self):
        sol = _filled([0.0, 1.0, 2.0])._finalize(ReturnCode.SUCCESS)
        out = sol.at_times([0.25, 1.0, 1.5])
        assert out.shape == (3, 2)
        assert jnp.allclose(out[2], _cubic(1.5), atol=1e-12)

    def test_backward_solution(self):
        sol = _filled([1.0, 0.5, 0.0], direction=-1.0)._finalize(ReturnCode.SUCCESS)
        assert jnp.allclose(sol.at(0.25), _cubic(0.25), atol=1e-12)
        with pytest.raises(ValueError):
            sol.at(1.1)

    def test_non_monotone_append_raises(self):
        sol = _filled([0.0, 1.0])
        with pytest.raises(ValueError, match="strictly after"):
            sol._append(1.0, _cubic(1.0), _cubic_dot(1.0))

    def test_frozen(self):
        sol = _filled([0.0])._finalize(ReturnCode.SUCCESS)
        with pytest.raises(RuntimeError, match="frozen"):
            sol._append(1.0, _cubic(1.0), _cubic_dot(1.0))

    def test_left_limit_used_inside_segment(self):
        """After a jump the segment follows the pre-jump right limit."""
        sol = Solution(problem=None, algorithm="test")
        sol._append(0.0, _cubic(0.0), _cubic_dot(0.0))
        jumped = _cubic(1.0) + 10.0
        sol._append(1.0, jumped, _cubic_dot(1.0), u_left=_cubic(1.0), du_left=_cubic_dot(1.0))
        sol._finalize(ReturnCode.SUCCESS)
        assert jnp.allclose(sol.at(0.5), _cubic(0.5), atol=1e-12)
        assert jnp.array_equal(sol.at(1.0), jumped)

    def test_components(self):
        sol = _filled([0.0, 1.0])._finalize(ReturnCode.SUCCESS)
        assert sol.components(1).shape == (2,)
        assert sol.components([1, 0]).shape == (2, 2)
        assert jnp.allclose(sol.components([1, 0])[1], jnp.array([0.5, -1.0]))

    def test_events_and_warnings_frozen(self):
        sol = _filled([0.0, 1.0])
        sol._record_event(EventRecord(1.0, 0, "preset"))
        sol._warn(ReturnCode.PROJECTION_FAILURE)
        sol._finalize(ReturnCode.TERMINATED)
        assert sol.events == (EventRecord(1.0, 0, "preset", True),)
        assert sol.warnings == frozenset({ReturnCode.PROJECTION_FAILURE})
        assert sol.stats.events == 1
        assert sol.successful

    def test_projection_flags(self):
        sol = Solution(problem=None, algorithm="test")
        sol._append(0.0, _cubic(0.0), _cubic_dot(0.0))
        sol._append(1.0, _cubic(1.0), _cubic_dot(1.0), projection_failed=True)
        sol._finalize(ReturnCode.SUCCESS)
        assert sol.projection_failed.tolist() == [False, True]


class TestReturnCode:
    def test_strings(self):
        assert str(ReturnCode.SUCCESS) == "Success"
        assert str(ReturnCode.DT_TOO_SMALL) == "DtTooSmall"

    def test_classification(self):
        assert ReturnCode.UNSTABLE.is_failure
        assert not ReturnCode.TERMINATED.is_failure
        assert ReturnCode.EVENT_ROOT_FIND_FAILURE.is_warning
        assert not ReturnCode.MAX_RETRIES_EXCEEDED.is_warning
