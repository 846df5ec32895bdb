"""Stepping schemes for the odejax stepper core.

Every scheme is exposed twice:

- as a pure step kernel operating on arrays and ``dynamics(t, x)``
  closures, compatible with ``jax.jit`` and ``jax.vmap``;
- as an :class:`Algorithm` factory binding the kernel to an
  :class:`~odejax.problem.ODEProblem`, which is what :func:`odejax.solve`
  consumes.

Available algorithms:

- :func:`RK4` -- Classic 4th-order Runge-Kutta (fixed step)
- :func:`RKF45` -- Runge-Kutta-Fehlberg 4(5) (adaptive)
- :func:`DP54` -- Dormand-Prince 5(4) (adaptive, FSAL)
- :func:`RKN1210` -- Runge-Kutta-Nyström 12(10) (adaptive, second-order problems)
- :func:`Leapfrog` -- Velocity Verlet (fixed step, symplectic)
- :func:`Yoshida4` -- 4th-order Yoshida composition (fixed step, symplectic)
- :func:`IMEXEuler` -- IMEX Euler (adaptive, split problems)
- :func:`IMEXTrapezoid` -- Crank-Nicolson / Heun IMEX (adaptive, split problems)
"""

from odejax.integrators._adaptive import (
    StepSizeController,
    compute_error_norm,
    compute_next_step_size,
    initial_step_size,
)
from odejax.integrators._types import Algorithm, SolverConfig, StepResult
from odejax.integrators.dp54 import DP54, dp54_step
from odejax.integrators.imex import (
    IMEXEuler,
    IMEXTrapezoid,
    imex_euler_step,
    imex_trapezoid_step,
)
from odejax.integrators.rk4 import RK4, rk4_step
from odejax.integrators.rkf45 import RKF45, rkf45_step
from odejax.integrators.rkn1210 import RKN1210, rkn1210_step
from odejax.integrators.symplectic import (
    Leapfrog,
    Yoshida4,
    leapfrog_step,
    yoshida4_step,
)

__all__ = [
    "Algorithm",
    "SolverConfig",
    "StepResult",
    "StepSizeController",
    "compute_error_norm",
    "compute_next_step_size",
    "initial_step_size",
    "RK4",
    "RKF45",
    "DP54",
    "RKN1210",
    "Leapfrog",
    "Yoshida4",
    "IMEXEuler",
    "IMEXTrapezoid",
    "rk4_step",
    "rkf45_step",
    "dp54_step",
    "rkn1210_step",
    "leapfrog_step",
    "yoshida4_step",
    "imex_euler_step",
    "imex_trapezoid_step",
]
