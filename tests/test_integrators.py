"""Tests for the odejax.integrators module.

Tests cover:
- Polynomial exactness (RK4 is exact for degree <= 3 polynomials)
- Exponential decay with known solution
- Embedded error estimates (RKF45, DP54, RKN1210, IMEX)
- FSAL derivative reuse (DP54)
- Symplectic kernels (leapfrog, Yoshida4)
- Backward integration
- Algorithm capability records
- JIT and vmap compatibility
"""

import jax
import jax.numpy as jnp
import pytest

from odejax.integrators import (
    DP54,
    RK4,
    RKF45,
    RKN1210,
    IMEXEuler,
    IMEXTrapezoid,
    Leapfrog,
    SolverConfig,
    StepResult,
    Yoshida4,
    dp54_step,
    imex_euler_step,
    imex_trapezoid_step,
    leapfrog_step,
    rk4_step,
    rkf45_step,
    rkn1210_step,
    yoshida4_step,
)
from odejax.problem import ODEProblem, partitioned_problem, second_order_problem, split_problem


# ──────────────────────────────────────────────
# Helper dynamics functions
# ──────────────────────────────────────────────

def _exponential_decay(t, x):
    """dx/dt = -x. Solution: x(t) = x0 * exp(-t)."""
    return -x


def _harmonic_oscillator(t, x):
    """d^2q/dt^2 = -q. State: [q, dq/dt]. Solution: [cos(t), -sin(t)]."""
    return jnp.array([x[1], -x[0]])


def _linear_dynamics(t, x):
    """dx/dt = 1. Solution: x(t) = x0 + t."""
    return jnp.ones_like(x)


def _quadratic_dynamics(t, x):
    """dx/dt = 2t. Solution: x(t) = x0 + t^2."""
    return 2.0 * t * jnp.ones_like(x)


def _cubic_dynamics(t, x):
    """dx/dt = 3t^2. Solution: x(t) = x0 + t^3."""
    return 3.0 * t**2 * jnp.ones_like(x)


def _harmonic_oscillator_p(t, x, params):
    """Problem-form wrapper of the harmonic oscillator."""
    return _harmonic_oscillator(t, x)


def _spring_force(t, q):
    """dp/dt = -q for a unit harmonic oscillator."""
    return -q


def _free_velocity(t, p):
    """dq/dt = p for unit mass."""
    return p


def _energy(p, q):
    return 0.5 * jnp.sum(p**2) + 0.5 * jnp.sum(q**2)


# ──────────────────────────────────────────────
# Type tests
# ──────────────────────────────────────────────

class TestTypes:
    def test_step_result_defaults(self):
        """StepResult leaves error and derivative unset by default."""
        result = StepResult(state=jnp.array([1.0]))
        assert result.state.shape == (1,)
        assert result.error is None
        assert result.derivative is None

    def test_solver_config_defaults(self):
        """SolverConfig has reasonable defaults."""
        config = SolverConfig()
        assert config.abs_tol == 1e-6
        assert config.rel_tol == 1e-3
        assert config.dt is None
        assert config.safety_factor == 0.9
        assert config.max_step_attempts == 10
        assert config.controller == "pi"
        assert config.norm == "max"

    def test_solver_config_custom(self):
        """SolverConfig accepts custom values."""
        config = SolverConfig(abs_tol=1e-10, rel_tol=1e-8, dt=0.5)
        assert config.abs_tol == 1e-10
        assert config.rel_tol == 1e-8
        assert config.dt == 0.5


# ──────────────────────────────────────────────
# RK4 tests
# ──────────────────────────────────────────────

class TestRK4:
    def test_exponential_decay(self):
        """RK4 approximates exponential decay with small error."""
        x0 = jnp.array([1.0])
        dt = 0.1
        result = rk4_step(_exponential_decay, 0.0, x0, dt)
        expected = jnp.exp(-dt)
        assert jnp.allclose(result.state, jnp.array([expected]), atol=1e-6)

    def test_linear_exactness(self):
        """RK4 is exact for linear dynamics (dx/dt = 1)."""
        x0 = jnp.array([5.0])
        result = rk4_step(_linear_dynamics, 0.0, x0, 1.0)
        assert jnp.allclose(result.state, x0 + 1.0, atol=1e-12)

    def test_quadratic_exactness(self):
        """RK4 is exact for quadratic dynamics (dx/dt = 2t)."""
        t0 = 1.0
        dt = 0.5
        result = rk4_step(_quadratic_dynamics, t0, jnp.array([0.0]), dt)
        expected = jnp.array([(t0 + dt) ** 2 - t0**2])
        assert jnp.allclose(result.state, expected, atol=1e-12)

    def test_cubic_exactness(self):
        """RK4 is exact for cubic dynamics (dx/dt = 3t^2)."""
        result = rk4_step(_cubic_dynamics, 0.0, jnp.array([0.0]), 1.0)
        assert jnp.allclose(result.state, jnp.array([1.0]), atol=1e-12)

    def test_harmonic_oscillator_multi_step(self):
        """RK4 tracks the harmonic oscillator over many small steps."""
        state = jnp.array([1.0, 0.0])
        dt = 0.01
        n_steps = 1000
        for _ in range(n_steps):
            state = rk4_step(_harmonic_oscillator, 0.0, state, dt).state
        t_final = dt * n_steps
        expected = jnp.array([jnp.cos(t_final), -jnp.sin(t_final)])
        assert jnp.allclose(state, expected, atol=1e-6)

    def test_no_error_estimate(self):
        """RK4 is a fixed-step scheme without an error estimate."""
        result = rk4_step(_exponential_decay, 0.0, jnp.array([1.0]), 0.1)
        assert result.error is None
        assert result.derivative is None

    def test_known_first_stage(self):
        """Passing k0 gives the same result as evaluating it."""
        x0 = jnp.array([1.0, 0.0])
        k0 = _harmonic_oscillator(0.0, x0)
        a = rk4_step(_harmonic_oscillator, 0.0, x0, 0.1)
        b = rk4_step(_harmonic_oscillator, 0.0, x0, 0.1, k0=k0)
        assert jnp.allclose(a.state, b.state, atol=1e-15)

    def test_backward_integration(self):
        """RK4 supports negative dt for backward integration."""
        x0 = jnp.array([1.0])
        fwd = rk4_step(_exponential_decay, 0.0, x0, 0.1)
        bwd = rk4_step(_exponential_decay, 0.1, fwd.state, -0.1)
        assert jnp.allclose(bwd.state, x0, atol=1e-6)


# ──────────────────────────────────────────────
# RKF45 / DP54 tests
# ──────────────────────────────────────────────

class TestRKF45:
    def test_exponential_decay(self):
        """RKF45 approximates exponential decay accurately."""
        result = rkf45_step(_exponential_decay, 0.0, jnp.array([1.0]), 0.5)
        assert jnp.allclose(result.state, jnp.array([jnp.exp(-0.5)]), atol=1e-5)

    def test_error_estimate_finite(self):
        """RKF45 produces a finite error vector of the state's shape."""
        result = rkf45_step(_harmonic_oscillator, 0.0, jnp.array([1.0, 0.0]), 0.1)
        assert result.error.shape == (2,)
        assert jnp.all(jnp.isfinite(result.error))

    def test_error_shrinks_with_step(self):
        """The embedded error estimate shrinks when the step shrinks."""
        x0 = jnp.array([1.0, 0.0])
        big = rkf45_step(_harmonic_oscillator, 0.0, x0, 0.5)
        small = rkf45_step(_harmonic_oscillator, 0.0, x0, 0.05)
        assert float(jnp.max(jnp.abs(small.error))) < float(jnp.max(jnp.abs(big.error)))

    def test_backward_integration(self):
        """RKF45 supports negative dt for backward integration."""
        x0 = jnp.array([1.0])
        fwd = rkf45_step(_exponential_decay, 0.0, x0, 0.5)
        bwd = rkf45_step(_exponential_decay, 0.5, fwd.state, -0.5)
        assert jnp.allclose(bwd.state, x0, atol=1e-5)


class TestDP54:
    def test_exponential_decay(self):
        """DP54 approximates exponential decay accurately."""
        result = dp54_step(_exponential_decay, 0.0, jnp.array([1.0]), 0.5)
        assert jnp.allclose(result.state, jnp.array([jnp.exp(-0.5)]), atol=1e-5)

    def test_harmonic_oscillator(self):
        """DP54 approximates the harmonic oscillator."""
        result = dp54_step(_harmonic_oscillator, 0.0, jnp.array([1.0, 0.0]), 0.1)
        expected = jnp.array([jnp.cos(0.1), -jnp.sin(0.1)])
        assert jnp.allclose(result.state, expected, atol=1e-7)

    def test_fsal_derivative(self):
        """The returned derivative is f at the candidate state."""
        result = dp54_step(_harmonic_oscillator, 0.0, jnp.array([1.0, 0.0]), 0.1)
        expected = _harmonic_oscillator(0.1, result.state)
        assert jnp.allclose(result.derivative, expected, atol=1e-14)

    def test_error_estimate_finite(self):
        """DP54 produces a finite error vector."""
        result = dp54_step(_harmonic_oscillator, 0.0, jnp.array([1.0, 0.0]), 0.1)
        assert jnp.all(jnp.isfinite(result.error))

    def test_backward_integration(self):
        """DP54 supports negative dt for backward integration."""
        x0 = jnp.array([1.0])
        fwd = dp54_step(_exponential_decay, 0.0, x0, 0.5)
        bwd = dp54_step(_exponential_decay, 0.5, fwd.state, -0.5)
        assert jnp.allclose(bwd.state, x0, atol=1e-5)


# ──────────────────────────────────────────────
# RKN1210 tests
# ──────────────────────────────────────────────

class TestRKN1210:
    def test_harmonic_oscillator(self):
        """RKN1210 is very accurate on q'' = -q."""
        q, v, q_err, v_err = rkn1210_step(
            _spring_force, 0.0, jnp.array([1.0]), jnp.array([0.0]), 0.5
        )
        assert jnp.allclose(q, jnp.array([jnp.cos(0.5)]), atol=1e-12)
        assert jnp.allclose(v, jnp.array([-jnp.sin(0.5)]), atol=1e-12)
        assert jnp.all(jnp.isfinite(q_err))
        assert jnp.all(jnp.isfinite(v_err))

    def test_backward_integration(self):
        """RKN1210 supports negative dt for backward integration."""
        q0 = jnp.array([1.0])
        v0 = jnp.array([0.0])
        q1, v1, _, _ = rkn1210_step(_spring_force, 0.0, q0, v0, 0.3)
        q2, v2, _, _ = rkn1210_step(_spring_force, 0.3, q1, v1, -0.3)
        assert jnp.allclose(q2, q0, atol=1e-12)
        assert jnp.allclose(v2, v0, atol=1e-12)

    def test_algorithm_uses_velocity_position_layout(self):
        """The RKN1210 algorithm steps a [v, q] state."""
        prob = second_order_problem(_spring_force, [0.0], [1.0], (0.0, 1.0))
        result = RKN1210().step(prob, 0.0, prob.x0, 0.5, None, None)
        expected = jnp.array([-jnp.sin(0.5), jnp.cos(0.5)])
        assert jnp.allclose(result.state, expected, atol=1e-12)
        assert result.error.shape == (2,)


# ──────────────────────────────────────────────
# Symplectic tests
# ──────────────────────────────────────────────

class TestSymplectic:
    def test_leapfrog_second_order(self):
        """Halving the step cuts the leapfrog error by about four."""
        p0, q0 = jnp.array([0.0]), jnp.array([1.0])

        def run(dt, n):
            p, q = p0, q0
            for _ in range(n):
                p, q, _ = leapfrog_step(_spring_force, _free_velocity, 0.0, p, q, dt)
            return q

        err1 = abs(float(run(0.1, 10)[0]) - float(jnp.cos(1.0)))
        err2 = abs(float(run(0.05, 20)[0]) - float(jnp.cos(1.0)))
        assert 3.0 < err1 / err2 < 5.0

    def test_leapfrog_returns_force_at_new_position(self):
        """The third return value seeds the next step."""
        p, q, f = leapfrog_step(
            _spring_force, _free_velocity, 0.0, jnp.array([0.0]), jnp.array([1.0]), 0.1
        )
        assert jnp.allclose(f, _spring_force(0.1, q), atol=1e-15)

    def test_yoshida4_more_accurate_than_leapfrog(self):
        """Yoshida4 beats leapfrog at the same step size."""
        p0, q0 = jnp.array([0.0]), jnp.array([1.0])
        _, q_lf, _ = leapfrog_step(_spring_force, _free_velocity, 0.0, p0, q0, 0.2)
        _, q_y4, _ = yoshida4_step(_spring_force, _free_velocity, 0.0, p0, q0, 0.2)
        exact = float(jnp.cos(0.2))
        assert abs(float(q_y4[0]) - exact) < abs(float(q_lf[0]) - exact)

    def test_leapfrog_energy_bounded(self):
        """Leapfrog energy error stays bounded over many periods."""
        p, q = jnp.array([0.0]), jnp.array([1.0])
        e0 = float(_energy(p, q))
        max_dev = 0.0
        for _ in range(2000):
            p, q, _ = leapfrog_step(_spring_force, _free_velocity, 0.0, p, q, 0.1)
            max_dev = max(max_dev, abs(float(_energy(p, q)) - e0))
        assert max_dev < 5e-3

    def test_time_reversible(self):
        """A forward then backward leapfrog step returns to the start."""
        p0, q0 = jnp.array([0.3]), jnp.array([1.0])
        p1, q1, _ = leapfrog_step(_spring_force, _free_velocity, 0.0, p0, q0, 0.1)
        p2, q2, _ = leapfrog_step(_spring_force, _free_velocity, 0.1, p1, q1, -0.1)
        assert jnp.allclose(p2, p0, atol=1e-14)
        assert jnp.allclose(q2, q0, atol=1e-14)

    def test_algorithm_derivative(self):
        """The Leapfrog algorithm returns the full derivative at the new state."""
        prob = partitioned_problem(_spring_force, _free_velocity, [0.0], [1.0], (0.0, 1.0))
        result = Leapfrog().step(prob, 0.0, prob.x0, 0.1, None, None)
        expected = prob.derivative(0.1, result.state, None)
        assert jnp.allclose(result.derivative, expected, atol=1e-15)
        assert result.error is None


# ──────────────────────────────────────────────
# IMEX tests
# ──────────────────────────────────────────────

class TestIMEX:
    L = jnp.array([[-2.0, 1.0], [1.0, -2.0]])

    @staticmethod
    def _zero(t, x):
        return jnp.zeros_like(x)

    def test_euler_linear_part_is_backward_euler(self):
        """With N = 0 a single full step equals (I - hL)^-1 x0 to first order."""
        x0 = jnp.array([1.0, 0.0])
        result = imex_euler_step(self.L, self._zero, 0.0, x0, 1e-3)
        exact = jax.scipy.linalg.expm(1e-3 * self.L) @ x0
        assert jnp.allclose(result.state, exact, atol=1e-5)

    def test_trapezoid_second_order(self):
        """IMEX trapezoid matches the matrix exponential to second order."""
        x0 = jnp.array([1.0, 0.0])
        h = 1e-2
        result = imex_trapezoid_step(self.L, self._zero, 0.0, x0, h)
        exact = jax.scipy.linalg.expm(h * self.L) @ x0
        assert jnp.allclose(result.state, exact, atol=1e-5)

    def test_affine_term(self):
        """The affine term is integrated: dx/dt = b from zero."""
        b = jnp.array([1.0, 2.0])
        zero_L = jnp.zeros((2, 2))
        result = imex_trapezoid_step(zero_L, self._zero, 0.0, jnp.zeros(2), 0.5, affine=b)
        assert jnp.allclose(result.state, 0.5 * b, atol=1e-14)

    def test_euler_factors_each_matrix_once(self, monkeypatch):
        """One factorization for the full step, one shared by both half steps."""
        calls = []
        lu_factor = jax.scipy.linalg.lu_factor

        def counting(a, *args, **kwargs):
            calls.append(a)
            return lu_factor(a, *args, **kwargs)

        monkeypatch.setattr(jax.scipy.linalg, "lu_factor", counting)
        x0 = jnp.array([1.0, 0.0])
        result = imex_euler_step(self.L, self._zero, 0.0, x0, 1e-2)
        assert len(calls) == 2
        half = jnp.linalg.solve(jnp.eye(2) - 5e-3 * self.L, x0)
        assert jnp.allclose(result.state, jnp.linalg.solve(jnp.eye(2) - 5e-3 * self.L, half))

    def test_stiff_decay_stays_bounded(self):
        """A very stiff linear mode is damped even with a large step."""
        L = jnp.array([[-1e6]])
        result = imex_euler_step(L, self._zero, 0.0, jnp.array([1.0]), 1.0)
        assert 0.0 <= float(result.state[0]) < 1e-5

    def test_algorithms_forward_only(self):
        """IMEX algorithms declare forward-only integration."""
        assert IMEXEuler().supports_backward is False
        assert IMEXTrapezoid().supports_backward is False
        assert IMEXTrapezoid().needs_linear_operator is True

    def test_algorithm_step_on_split_problem(self):
        """The algorithm wrapper passes L, b and N from the problem."""
        prob = split_problem(self.L, self._zero, [1.0, 0.0], (0.0, 1.0))
        result = IMEXTrapezoid().step(prob, 0.0, prob.x0, 1e-2, None, None)
        direct = imex_trapezoid_step(self.L, self._zero, 0.0, prob.x0, 1e-2)
        assert jnp.allclose(result.state, direct.state, atol=1e-15)


# ──────────────────────────────────────────────
# Algorithm records
# ──────────────────────────────────────────────

class TestAlgorithms:
    @pytest.mark.parametrize(
        "factory, order, adaptive",
        [
            (RK4, 4, False),
            (RKF45, 5, True),
            (DP54, 5, True),
            (RKN1210, 12, True),
            (Leapfrog, 2, False),
            (Yoshida4, 4, False),
            (IMEXEuler, 1, True),
            (IMEXTrapezoid, 2, True),
        ],
    )
    def test_capabilities(self, factory, order, adaptive):
        alg = factory()
        assert alg.order == order
        assert alg.adaptive is adaptive
        if adaptive:
            assert alg.error_order is not None

    def test_explicit_algorithms_step_plain_problems(self):
        """Explicit RK algorithms accept any problem form via its derivative."""
        prob = ODEProblem(_harmonic_oscillator_p, jnp.array([1.0, 0.0]), (0.0, 1.0))
        for alg in (RK4(), RKF45(), DP54()):
            result = alg.step(prob, 0.0, prob.x0, 0.1, None, None)
            expected = jnp.array([jnp.cos(0.1), -jnp.sin(0.1)])
            assert jnp.allclose(result.state, expected, atol=1e-6)


# ──────────────────────────────────────────────
# JAX compatibility tests
# ──────────────────────────────────────────────

class TestJAXCompatibility:
    def test_jit_rk4(self):
        """rk4_step is JIT-compilable."""
        @jax.jit
        def step(t, x, dt):
            return rk4_step(_harmonic_oscillator, t, x, dt)

        result = step(0.0, jnp.array([1.0, 0.0]), 0.01)
        expected = jnp.array([jnp.cos(0.01), -jnp.sin(0.01)])
        assert jnp.allclose(result.state, expected, atol=1e-10)

    def test_jit_dp54(self):
        """dp54_step is JIT-compilable, error and derivative included."""
        @jax.jit
        def step(t, x, dt):
            return dp54_step(_harmonic_oscillator, t, x, dt)

        result = step(0.0, jnp.array([1.0, 0.0]), 0.1)
        assert jnp.all(jnp.isfinite(result.state))
        assert jnp.all(jnp.isfinite(result.error))

    def test_jit_rkn1210(self):
        """rkn1210_step is JIT-compilable."""
        @jax.jit
        def step(q, v, dt):
            return rkn1210_step(_spring_force, 0.0, q, v, dt)

        q, v, _, _ = step(jnp.array([1.0]), jnp.array([0.0]), 0.1)
        assert jnp.allclose(q, jnp.array([jnp.cos(0.1)]), atol=1e-12)

    def test_jit_imex(self):
        """imex_trapezoid_step is JIT-compilable."""
        L = jnp.array([[-1.0]])

        @jax.jit
        def step(x, dt):
            return imex_trapezoid_step(L, lambda t, y: jnp.zeros_like(y), 0.0, x, dt)

        result = step(jnp.array([1.0]), 0.1)
        assert jnp.all(jnp.isfinite(result.state))

    def test_vmap_rkf45(self):
        """rkf45_step works with vmap over a batch of initial conditions."""
        x0_batch = jnp.array([[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]])

        def step(x0):
            return rkf45_step(_harmonic_oscillator, 0.0, x0, 0.1).state

        assert jax.vmap(step)(x0_batch).shape == (3, 2)

    def test_vmap_leapfrog(self):
        """leapfrog_step works with vmap over a batch of positions."""
        q_batch = jnp.array([[1.0], [2.0]])

        def step(q):
            p, q_new, _ = leapfrog_step(
                _spring_force, _free_velocity, 0.0, jnp.zeros_like(q), q, 0.1
            )
            return q_new

        assert jax.vmap(step)(q_batch).shape == (2, 1)

    def test_grad_rk4(self):
        """rk4_step supports gradient computation."""
        def loss(x0):
            return jnp.sum(rk4_step(_harmonic_oscillator, 0.0, x0, 0.01).state ** 2)

        grad = jax.grad(loss)(jnp.array([1.0, 0.0]))
        assert grad.shape == (2,)
        assert jnp.all(jnp.isfinite(grad))

    def test_lax_scan_rk4(self):
        """rk4_step works inside lax.scan for multi-step propagation."""
        dt = 0.01
        n_steps = 100

        def scan_step(state, _):
            result = rk4_step(_harmonic_oscillator, 0.0, state, dt)
            return result.state, result.state

        final, trajectory = jax.lax.scan(
            scan_step, jnp.array([1.0, 0.0]), None, length=n_steps
        )
        assert trajectory.shape == (n_steps, 2)
        expected = jnp.array([jnp.cos(1.0), -jnp.sin(1.0)])
        assert jnp.allclose(final, expected, atol=1e-8)
