"""
odejax is an adaptive ODE integration engine implemented in JAX, with
explicit, symplectic, Nyström and IMEX schemes, a continuous/discrete/preset
event system and manifold projection.
"""

from .config import set_dtype, get_dtype, get_time_rounding

from .problem import (
    ODEProblem,
    StatePartition,
    IntegratorContext,
    partitioned_problem,
    second_order_problem,
    split_problem,
)

from .integrators import (
    Algorithm,
    SolverConfig,
    StepResult,
    RK4,
    RKF45,
    DP54,
    RKN1210,
    Leapfrog,
    Yoshida4,
    IMEXEuler,
    IMEXTrapezoid,
)

from .events import (
    CallbackSet,
    ContinuousCallback,
    DiscreteCallback,
    PresetTimeCallback,
)

from .projection import ManifoldProjection, ProjectionResult, project
from .solution import EventRecord, ReturnCode, Solution, SolverStats
from .solver import advance, solve, solve_ensemble

__all__ = [
    "set_dtype",
    "get_dtype",
    "get_time_rounding",
    "ODEProblem",
    "StatePartition",
    "IntegratorContext",
    "partitioned_problem",
    "second_order_problem",
    "split_problem",
    "Algorithm",
    "SolverConfig",
    "StepResult",
    "RK4",
    "RKF45",
    "DP54",
    "RKN1210",
    "Leapfrog",
    "Yoshida4",
    "IMEXEuler",
    "IMEXTrapezoid",
    "CallbackSet",
    "ContinuousCallback",
    "DiscreteCallback",
    "PresetTimeCallback",
    "ManifoldProjection",
    "ProjectionResult",
    "project",
    "EventRecord",
    "ReturnCode",
    "Solution",
    "SolverStats",
    "advance",
    "solve",
    "solve_ensemble",
]
