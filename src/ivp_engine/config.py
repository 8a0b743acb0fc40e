# src/ivp_engine/config.py
"""Configuration models for mapping/YAML-style integration setups.

This module defines the pydantic-facing configuration object and translates it
into the native ivp_engine objects (StepperOptions, Solver, DenseOutput).

Notes:
    - Unknown fields are allowed and ignored (`extra="allow"`), so an
      integration block can live inside a larger configuration file.
    - Output times must be finite and sorted in the direction of integration;
      this is the only layer that validates their ordering.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .core import Solver, solve
from .dense import DenseOptions, DenseOutput, dense
from .errors import raise_invalid_options
from .steppers import (
    AdaptiveConfig,
    DtControllerConfig,
    MethodName,
    NewtonConfig,
    StepperOptions,
    get_stepper,
)

if TYPE_CHECKING:
    from .problem import IVP

_NO_FINAL_TIME_MSG = "either `tout` or `tstop` must be given"
_TOUT_ORDER_MSG = "tout must be strictly monotonic, got {tout}"
_TSTOP_MISMATCH_MSG = "tstop={tstop} must equal the last output time {last}"
_ATOL_SIZE_MSG = "atol has {n} components but the problem has {n_states} states"

NonNegativeFloat = Annotated[float, Field(ge=0.0)]


class IntegrationConfig(BaseModel):
    """Configuration schema for one integration run.

    Mirrors StepperOptions fields with validation and YAML-friendly defaults.
    """

    model_config = ConfigDict(extra="allow")

    method: MethodName = Field(
        default="heun",
        description="Stepper registry name",
    )

    # Output / end time
    tout: list[float] | None = Field(
        default=None,
        description="Output times for dense output",
    )
    tstop: float | None = Field(
        default=None,
        description="Final time (defaults to the last output time)",
    )
    dense: bool = Field(
        default=True,
        description="Resample at `tout` instead of yielding every accepted step",
    )

    # Adaptive stepping controls
    rtol: float = Field(default=1e-6, ge=0.0)
    atol: NonNegativeFloat | list[NonNegativeFloat] = Field(
        default=1e-9,
        description="Absolute tolerance, scalar or one value per state component",
    )
    dt_init: float | None = Field(default=None, gt=0.0)
    max_reject: int = Field(default=25, ge=1)
    max_steps: int = Field(default=1_000_000, ge=1)

    # dt controller controls
    dt_min: float = Field(default=0.0, ge=0.0)
    dt_max: float = Field(default=float("inf"), gt=0.0)
    safety: float = Field(default=0.9, gt=0.0)
    fac_min: float = Field(default=0.2, gt=0.0)
    fac_max: float = Field(default=5.0, gt=0.0)

    # Newton iteration (implicit steppers)
    newton_max_iter: int = Field(default=10, ge=1)
    newton_tol: float = Field(default=1e-3, gt=0.0)

    @model_validator(mode="after")
    def check_times(self) -> IntegrationConfig:
        if self.tout is None:
            if self.tstop is None:
                raise ValueError(_NO_FINAL_TIME_MSG)
            return self

        tout = self.tout
        if not tout:
            raise ValueError(_TOUT_ORDER_MSG.format(tout=tout))
        diffs = [b - a for a, b in zip(tout, tout[1:], strict=False)]
        if not (all(d > 0 for d in diffs) or all(d < 0 for d in diffs)):
            raise ValueError(_TOUT_ORDER_MSG.format(tout=tout))
        if self.tstop is not None and self.tstop != tout[-1]:
            raise ValueError(
                _TSTOP_MISMATCH_MSG.format(tstop=self.tstop, last=tout[-1])
            )
        return self

    @property
    def final_time(self) -> float:
        """Final time of the run (``tstop`` or the last output time)."""
        if self.tout is not None:
            return float(self.tout[-1])
        return float(self.tstop)  # type: ignore[arg-type]

    def to_stepper_options(self) -> StepperOptions:
        """Convert this config to native StepperOptions.

        Returns:
            Fully constructed StepperOptions instance.
        """
        atol = self.atol
        if isinstance(atol, list):
            atol = np.asarray(atol, dtype=np.float64)

        adaptive_cfg = AdaptiveConfig(
            rtol=self.rtol,
            atol=atol,
            dt_init=self.dt_init,
            max_reject=self.max_reject,
            max_steps=self.max_steps,
        )

        dt_controller = DtControllerConfig(
            dt_min=self.dt_min,
            dt_max=self.dt_max,
            safety=self.safety,
            fac_min=self.fac_min,
            fac_max=self.fac_max,
        )

        return StepperOptions(
            tstop=self.final_time,
            adaptive_cfg=adaptive_cfg,
            dt_controller=dt_controller,
            newton=NewtonConfig(
                max_iter=self.newton_max_iter,
                tol=self.newton_tol,
            ),
        )

    def to_dense_options(self) -> DenseOptions:
        """Convert the output times to native DenseOptions.

        Returns:
            DenseOptions with ``tout`` defaulting to ``[tstop]``.
        """
        tout = self.tout if self.tout is not None else [self.final_time]
        return DenseOptions(
            tout=tuple(float(t) for t in tout),
            tstop=self.final_time,
        )

    def build(self, ode: IVP) -> Solver | DenseOutput:
        """Build the configured solver for a problem.

        Args:
            ode: Problem to integrate.

        Raises:
            ConfigurationError: If a per-component ``atol`` does not match the
                number of states.

        Returns:
            DenseOutput when ``dense`` is set, otherwise the plain Solver.
        """
        if isinstance(self.atol, list) and len(self.atol) != ode.n_states:
            raise_invalid_options(
                detail=_ATOL_SIZE_MSG.format(n=len(self.atol), n_states=ode.n_states)
            )
        stepper_cls = get_stepper(self.method)
        stepper = stepper_cls(options=self.to_stepper_options())
        if not self.dense:
            return solve(ode, stepper)
        return dense(ode, stepper, tout=self.to_dense_options().tout)
