"""imex_engine additive IMEX Runge-Kutta time-integration package."""

from __future__ import annotations

from .buffer_pool import BufferPool, BufferPoolOptions
from .coefficients import StageCoefficients, StageCombination, derive_stage_coefficients
from .collaborators import (
    AfterSubcycleCombiner,
    ExplicitTendencyProvider,
    FieldCategory,
    ImplicitCorrector,
    SubstagePostProcessor,
)
from .config import SchemeConfig
from .driver import RetryPolicy, TimestepDriver
from .errors import (
    BufferPreconditionError,
    ConfigurationError,
    ErrorCode,
    ImexEngineError,
    InvalidTableauError,
    SolverFailureError,
    StateShapeError,
)
from .linear_dynamics import ImplicitSolverConfig, LinearImexDynamics, SubstageFilter
from .matrix_ops import (
    GridGeometry,
    Operator,
    build_hyperdiffusion_operator,
    build_identity_operator,
    build_implicit_euler_operators,
    build_laplacian_tridiag,
    clear_implicit_solver_cache,
    discard_implicit_solver,
    implicit_solve,
)
from .slots import SlotArena, SlotRef, SlotRole, StepPlan, build_step_plan
from .tableau import (
    ImexTableau,
    ars222,
    ars343,
    ars443,
    ars_tableau_from_butcher,
    get_tableau,
)
from .timestep_scheme import ImexTimestepScheme

__all__ = [
    "AfterSubcycleCombiner",
    "BufferPool",
    "BufferPoolOptions",
    "BufferPreconditionError",
    "ConfigurationError",
    "ErrorCode",
    "ExplicitTendencyProvider",
    "FieldCategory",
    "GridGeometry",
    "ImexEngineError",
    "ImexTableau",
    "ImexTimestepScheme",
    "ImplicitCorrector",
    "ImplicitSolverConfig",
    "InvalidTableauError",
    "LinearImexDynamics",
    "Operator",
    "RetryPolicy",
    "SchemeConfig",
    "SlotArena",
    "SlotRef",
    "SlotRole",
    "SolverFailureError",
    "StageCoefficients",
    "StageCombination",
    "StateShapeError",
    "StepPlan",
    "SubstageFilter",
    "SubstagePostProcessor",
    "TimestepDriver",
    "ars222",
    "ars343",
    "ars443",
    "ars_tableau_from_butcher",
    "build_hyperdiffusion_operator",
    "build_identity_operator",
    "build_implicit_euler_operators",
    "build_laplacian_tridiag",
    "build_step_plan",
    "clear_implicit_solver_cache",
    "derive_stage_coefficients",
    "discard_implicit_solver",
    "get_tableau",
    "implicit_solve",
]

__version__ = "0.1.0"
