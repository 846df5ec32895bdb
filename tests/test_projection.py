"""Tests for manifold projection."""

import math

import jax.numpy as jnp
import pytest

from odejax import DP54, RK4, ODEProblem, ReturnCode, SolverConfig, solve
from odejax.projection import ManifoldProjection, project


def _circle(x):
    return jnp.sum(x**2) - 1.0


class TestProject:
    def test_projects_onto_circle(self):
        res = project(jnp.array([1.2, 0.1]), _circle)
        assert res.converged
        assert abs(float(_circle(res.state))) <= 1e-10
        # Nearest point keeps the direction.
        direction = jnp.array([1.2, 0.1]) / jnp.linalg.norm(jnp.array([1.2, 0.1]))
        assert jnp.allclose(res.state, direction, atol=1e-8)

    def test_idempotent(self):
        """An input on the manifold is returned unchanged."""
        x = jnp.array([0.6, 0.8])
        res = project(x, _circle)
        assert res.converged
        assert res.iterations == 0
        assert jnp.array_equal(res.state, x)

    def test_projecting_twice_changes_nothing(self):
        once = project(jnp.array([2.0, 1.0]), _circle)
        twice = project(once.state, _circle)
        assert twice.iterations == 0
        assert jnp.array_equal(once.state, twice.state)

    def test_explicit_jacobian(self):
        res = project(
            jnp.array([1.5, 0.0]), _circle, jacobian=lambda x: (2.0 * x)[None, :]
        )
        assert res.converged
        assert jnp.allclose(res.state, jnp.array([1.0, 0.0]), atol=1e-10)

    def test_metric_weights_correction(self):
        """A heavy metric on a component keeps that component nearly fixed."""
        metric = jnp.diag(jnp.array([1e6, 1.0]))
        res = project(jnp.array([0.6, 0.9]), _circle, metric=metric)
        assert res.converged
        assert abs(float(res.state[0]) - 0.6) < 1e-4
        assert float(res.state[1]) == pytest.approx(0.8, abs=1e-4)

    def test_failure_returns_input(self):
        """An unreachable manifold reports failure and keeps the input."""
        x = jnp.array([1.0, 1.0])
        res = project(x, lambda y: jnp.sum(y**2) + 1.0, max_iters=5)
        assert not res.converged
        assert jnp.array_equal(res.state, x)

    def test_multiple_constraints(self):
        def g(x):
            return jnp.array([x[0] + x[1] + x[2] - 1.0, x[0] - x[1]])

        res = project(jnp.array([1.0, 0.0, 0.5]), g)
        assert res.converged
        assert jnp.allclose(g(res.state), 0.0, atol=1e-10)


class TestManifoldProjection:
    def test_residual_concatenation(self):
        mp = ManifoldProjection(_circle, lambda x: x[0] - x[1])
        r = mp.residual(jnp.array([1.0, 0.0]))
        assert r.shape == (2,)
        assert jnp.allclose(r, jnp.array([0.0, 1.0]))
        assert len(mp) == 2

    def test_due(self):
        mp = ManifoldProjection(_circle, every=3)
        assert not mp.due(1)
        assert not mp.due(2)
        assert mp.due(3)
        assert mp.due(6)

    def test_no_residuals_never_due(self):
        assert not ManifoldProjection().due(1)

    def test_call(self):
        res = ManifoldProjection(_circle)(jnp.array([0.0, 2.0]))
        assert res.converged
        assert jnp.allclose(res.state, jnp.array([0.0, 1.0]), atol=1e-10)

    def test_validation(self):
        with pytest.raises(TypeError, match="callable"):
            ManifoldProjection(1.0)
        with pytest.raises(ValueError, match="every"):
            ManifoldProjection(_circle, every=0)
        with pytest.raises(ValueError, match="abs_tol"):
            ManifoldProjection(_circle, abs_tol=0.0)
        with pytest.raises(ValueError, match="max_iters"):
            ManifoldProjection(_circle, max_iters=0)
        with pytest.raises(ValueError, match="square"):
            ManifoldProjection(_circle, metric=jnp.ones((2, 3)))


# ──────────────────────────────────────────────
# Projection inside solve()
# ──────────────────────────────────────────────

def _kepler_rhs(t, x, p):
    """Planar Kepler problem. State: [px, py, qx, qy]."""
    q = x[2:]
    a = -q / jnp.linalg.norm(q) ** 3
    return jnp.concatenate([a, x[:2]])


def _kepler_energy(x):
    return 0.5 * jnp.sum(x[:2] ** 2) - 1.0 / jnp.linalg.norm(x[2:])


def _kepler_angular_momentum(x):
    return x[2] * x[1] - x[3] * x[0]


class TestProjectionInSolve:
    X0 = [0.0, 1.2, 1.0, 0.0]

    def test_invariants_held(self):
        prob = ODEProblem(_kepler_rhs, self.X0, (0.0, 20.0))
        e0 = float(_kepler_energy(prob.x0))
        l0 = float(_kepler_angular_momentum(prob.x0))
        constraints = ManifoldProjection(
            lambda x: _kepler_energy(x) - e0,
            lambda x: _kepler_angular_momentum(x) - l0,
        )
        sol = solve(prob, DP54(), SolverConfig(abs_tol=1e-6, rel_tol=1e-6), constraints=constraints)
        assert sol.retcode == ReturnCode.SUCCESS
        assert not sol.warnings
        assert not sol.projection_failed.any()
        assert sol.stats.projections == sol.stats.accepted
        for x in sol.u:
            assert abs(float(_kepler_energy(x)) - e0) < 1e-9
            assert abs(float(_kepler_angular_momentum(x)) - l0) < 1e-9

    def test_projection_reduces_drift(self):
        prob = ODEProblem(_kepler_rhs, self.X0, (0.0, 20.0))
        e0 = float(_kepler_energy(prob.x0))
        config = SolverConfig(abs_tol=1e-4, rel_tol=1e-4)
        free = solve(prob, DP54(), config)
        held = solve(prob, DP54(), config, constraints=ManifoldProjection(
            lambda x: _kepler_energy(x) - e0
        ))
        drift_free = abs(float(_kepler_energy(free.u_final)) - e0)
        drift_held = abs(float(_kepler_energy(held.u_final)) - e0)
        assert drift_held < drift_free

    def test_cadence(self):
        prob = ODEProblem(lambda t, x, p: -x, [1.0, 1.0], (0.0, 1.0))
        sol = solve(
            prob, RK4(), SolverConfig(dt=0.1),
            constraints=ManifoldProjection(lambda x: x[0] - x[1], every=4),
        )
        assert sol.stats.accepted == 10
        assert sol.stats.projections == 2

    def test_failure_flags_entries(self):
        """A non-converging projection keeps the state and only warns."""
        prob = ODEProblem(lambda t, x, p: -x, [1.0, 1.0], (0.0, 1.0))
        impossible = ManifoldProjection(lambda x: jnp.sum(x**2) + 1.0, max_iters=3)
        sol = solve(prob, RK4(), SolverConfig(dt=0.25), constraints=impossible)
        assert sol.retcode == ReturnCode.SUCCESS
        assert ReturnCode.PROJECTION_FAILURE in sol.warnings
        assert sol.projection_failed.tolist() == [False, True, True, True, True]
        assert sol.stats.projection_failures == 4
        assert float(sol.u_final[0]) == pytest.approx(math.exp(-1.0), abs=1e-3)
