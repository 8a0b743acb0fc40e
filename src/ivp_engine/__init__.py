"""ivp_engine generic initial value problem integration package."""

from __future__ import annotations

from .config import IntegrationConfig
from .core import (
    Capability,
    Solver,
    SolverCursor,
    Status,
    Step,
    StepperState,
    collect,
    onestep,
    solve,
)
from .dense import (
    DenseCursor,
    DenseOptions,
    DenseOutput,
    DenseState,
    dense,
    hermite_interpolate,
    interpolate,
    next_interval,
)
from .errors import (
    ConfigurationError,
    IntegrationWarning,
    IVPEngineError,
    NonMonotonicStepError,
    ProblemDefinitionError,
    StepperContractError,
    UnsupportedPairingError,
)
from .problem import IVP, ExplicitODE, ImplicitODE
from .steppers import (
    AdaptiveConfig,
    BackwardEuler,
    DtControllerConfig,
    Euler,
    ForwardEuler,
    Heun,
    NewtonConfig,
    StepperOptions,
    get_stepper,
)

__all__ = [
    "IVP",
    "AdaptiveConfig",
    "BackwardEuler",
    "Capability",
    "ConfigurationError",
    "DenseCursor",
    "DenseOptions",
    "DenseOutput",
    "DenseState",
    "DtControllerConfig",
    "Euler",
    "ExplicitODE",
    "ForwardEuler",
    "Heun",
    "IVPEngineError",
    "ImplicitODE",
    "IntegrationConfig",
    "IntegrationWarning",
    "NewtonConfig",
    "NonMonotonicStepError",
    "ProblemDefinitionError",
    "Solver",
    "SolverCursor",
    "Status",
    "Step",
    "StepperContractError",
    "StepperOptions",
    "StepperState",
    "UnsupportedPairingError",
    "collect",
    "dense",
    "get_stepper",
    "hermite_interpolate",
    "interpolate",
    "next_interval",
    "onestep",
    "solve",
]

__version__ = "0.1.0"
