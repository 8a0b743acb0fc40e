# tests/helpers.py
"""Scripted steppers used to exercise the engine and dense-output contracts.

The scripted problems are ``y' = 1`` with unit steps, so every accepted step
lies on ``y = y0 + (t - t0)`` and cubic Hermite interpolation is exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

from ivp_engine.core import Capability, Status, Step
from ivp_engine.problem import ExplicitODE

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from ivp_engine.core import Solver
    from ivp_engine.problem import IVP

    FloatArray = NDArray[np.floating]


def _rhs_one(_t: float, y: FloatArray) -> FloatArray:
    return np.ones_like(y)


def make_unit_ode(t0: float = 0.0, y0: float = 0.0) -> ExplicitODE:
    """y' = 1 starting at (t0, y0)."""
    return ExplicitODE(t0=t0, y0=np.array([y0]), F=_rhs_one)


@dataclass(slots=True)
class ScriptedState:
    """State of the scripted steppers."""

    step: Step
    trials: int = 0
    accepts: int = 0
    reason: str | None = None


class ScriptedStepper:
    """Sub-step stepper taking steps of size ``dt`` with scripted error values.

    Args:
        errs: Error estimates returned by successive errorcontrol calls
            (0.0 once exhausted).
        tstop: Final time.
        dt: Signed step size.
        abort_after: Abort on the trial following this many trials.
        accept_status: Status returned by accept.
        errorcontrol_status: Status returned by errorcontrol.
    """

    name: ClassVar[str] = "scripted"
    capability: ClassVar[Capability] = Capability.SUBSTEP
    supports: ClassVar[frozenset[str]] = frozenset({"explicit"})

    def __init__(  # noqa: PLR0913
        self,
        errs: Sequence[float] = (),
        *,
        tstop: float = float("inf"),
        dt: float = 1.0,
        abort_after: int | None = None,
        accept_status: Status = Status.CONT,
        errorcontrol_status: Status = Status.CONT,
    ) -> None:
        """Initialize ScriptedStepper."""
        self.errs = tuple(errs)
        self.tstop = tstop
        self.dt = dt
        self.abort_after = abort_after
        self.accept_status = accept_status
        self.errorcontrol_status = errorcontrol_status

    @classmethod
    def from_options(cls, **options: Any) -> ScriptedStepper:  # noqa: ANN401
        """Build from keyword options."""
        return cls(**options)

    def init(self, ode: IVP) -> ScriptedState:
        """Fresh state at the initial condition."""
        return ScriptedState(step=Step.initial(ode))

    def output(self, state: ScriptedState) -> tuple[float, FloatArray, FloatArray]:
        """Return the last accepted step."""
        return state.step.t, state.step.y, state.step.dy

    def trialstep(self, solver: Solver, state: ScriptedState) -> Status:  # noqa: ARG002
        """Count trials, abort or finish as scripted."""
        state.trials += 1
        if self.abort_after is not None and state.trials > self.abort_after:
            state.reason = "scripted failure"
            return Status.ABORT
        td = -1.0 if self.dt < 0 else 1.0
        if td * state.step.t >= td * self.tstop:
            return Status.FINISH
        return Status.CONT

    def errorcontrol(
        self,
        solver: Solver,  # noqa: ARG002
        state: ScriptedState,
    ) -> tuple[float, Status]:
        """Return the scripted error for this trial."""
        i = state.trials - 1
        err = self.errs[i] if i < len(self.errs) else 0.0
        return err, self.errorcontrol_status

    def accept(self, solver: Solver, state: ScriptedState) -> Status:  # noqa: ARG002
        """Advance t and y by dt."""
        step = state.step
        step.assign(step.t + self.dt, step.y + self.dt, step.dy, dt=self.dt)
        state.accepts += 1
        return self.accept_status


class FixedUnitStepper:
    """Fused stepper taking unit steps up to ``tstop``."""

    name: ClassVar[str] = "fixed-unit"
    capability: ClassVar[Capability] = Capability.FUSED
    supports: ClassVar[frozenset[str]] = frozenset({"explicit"})

    def __init__(self, tstop: float = 3.0) -> None:
        """Initialize FixedUnitStepper."""
        self.tstop = tstop

    @classmethod
    def from_options(cls, **options: Any) -> FixedUnitStepper:  # noqa: ANN401
        """Build from keyword options."""
        return cls(**options)

    def init(self, ode: IVP) -> ScriptedState:
        """Fresh state at the initial condition."""
        return ScriptedState(step=Step.initial(ode))

    def output(self, state: ScriptedState) -> tuple[float, FloatArray, FloatArray]:
        """Return the last accepted step."""
        return state.step.t, state.step.y, state.step.dy

    def onestep(self, solver: Solver, state: ScriptedState) -> Status:  # noqa: ARG002
        """One unit step, or FINISH at tstop."""
        step = state.step
        if step.t >= self.tstop:
            return Status.FINISH
        step.assign(step.t + 1.0, step.y + 1.0, step.dy, dt=1.0)
        return Status.CONT
