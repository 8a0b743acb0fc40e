# src/ivp_engine/core.py
"""Iteration engine for initial value problems.

A :class:`Solver` pairs a problem (what to integrate) with a stepper (how to
advance). Iterating a solver yields ``(t, y)`` pairs, one per accepted step,
starting with the initial condition.

Stepper contract:
    Every stepper declares an explicit ``capability`` marker and implements
    ``init(ode) -> state`` and ``output(state) -> (t, y, dy)``. On top of that:

    - ``Capability.FUSED`` steppers implement ``onestep(solver, state)``
      directly (fixed-step or otherwise non-retrying algorithms).
    - ``Capability.SUBSTEP`` steppers implement the three sub-step functions
      ``trialstep``, ``errorcontrol`` and ``accept``; the generic
      :func:`onestep` loop drives them.

Status propagation:
    Every sub-step function returns a :class:`Status`. ``ABORT`` stops the
    integration immediately and is reported as an :class:`IntegrationWarning`;
    ``FINISH`` ends the integration silently. Rejected trial steps
    (``err > 1``) are retried and never reach the caller.

Iteration triad:
    ``Solver.start()`` builds a :class:`SolverCursor`. ``advance()`` does the
    work (it takes the next step and reports whether the sequence is
    exhausted); ``current()`` is a pure read of the accepted step. Each cursor
    owns its stepper state exclusively, so two cursors over one solver never
    share buffers.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Final, Protocol, runtime_checkable

import numpy as np

from .errors import (
    IntegrationWarning,
    StepperContractError,
    raise_contract_error,
    raise_invalid_options,
    raise_unsupported_pairing,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from .problem import IVP, FloatArray


# =============================================================================
# Errors / messages
# =============================================================================

_ABORT_MSG: Final[str] = "Integration aborted in {where} (stepper {stepper}, t={t!r})"
_NO_CAPABILITY_MSG: Final[str] = (
    "Stepper {stepper} does not declare a Capability (FUSED or SUBSTEP)"
)
_INSTANCE_OPTIONS_MSG: Final[str] = (
    "options can only be given together with a stepper class, not an instance"
)


# =============================================================================
# Status / capability markers
# =============================================================================


class Status(Enum):
    """Outcome of a sub-step function.

    Values:
        CONT: continue integration.
        ABORT: unrecoverable failure, stop immediately.
        FINISH: the end condition was reached, stop normally.
    """

    CONT = "cont"
    ABORT = "abort"
    FINISH = "finish"


class Capability(Enum):
    """Which part of the stepping contract a stepper implements."""

    FUSED = "fused"
    SUBSTEP = "substep"


# =============================================================================
# Step
# =============================================================================


@dataclass(slots=True)
class Step:
    """Value of the solution and its derivative at one time.

    Steppers and the dense-output layer reuse the same ``Step`` buffers across
    iterations; use :meth:`copy` to keep a snapshot.

    Attributes:
        t: Time.
        y: State vector.
        dy: Derivative vector.
        dt: Size of the step that produced this value, if tracked.
    """

    t: float
    y: FloatArray
    dy: FloatArray
    dt: float | None = None

    @classmethod
    def initial(cls, ode: IVP) -> Step:
        """Build a fresh step holding copies of the initial condition.

        Args:
            ode: Problem providing t0, y0 and dy0.

        Returns:
            New Step owning its own buffers.
        """
        dy0 = ode.dy0 if ode.dy0 is not None else np.zeros_like(ode.y0)
        return cls(
            t=float(ode.t0),
            y=np.array(ode.y0, dtype=np.float64, copy=True),
            dy=np.array(dy0, dtype=np.float64, copy=True),
        )

    def assign(
        self,
        t: float,
        y: FloatArray,
        dy: FloatArray,
        dt: float | None = None,
    ) -> None:
        """Overwrite this step in place."""
        self.t = float(t)
        np.copyto(self.y, y)
        np.copyto(self.dy, dy)
        self.dt = dt

    def copy_from(self, other: Step) -> None:
        """Overwrite this step in place with the contents of ``other``."""
        self.assign(other.t, other.y, other.dy, other.dt)

    def copy(self) -> Step:
        """Return an independent snapshot of this step."""
        return Step(t=self.t, y=self.y.copy(), dy=self.dy.copy(), dt=self.dt)


# =============================================================================
# Stepper contract
# =============================================================================


@runtime_checkable
class StepperState(Protocol):
    """Per-run working memory of a stepper.

    Concrete states hold scratch buffers and adaptive parameters. The only
    attribute the engine and the dense layer rely on is the last accepted step.
    """

    step: Step


class Stepper(Protocol):
    """Capabilities every stepper provides."""

    name: ClassVar[str]
    capability: ClassVar[Capability]
    supports: ClassVar[frozenset[str]]

    @property
    def tstop(self) -> float:
        """Final time of the integration (``inf`` for unbounded)."""
        ...

    @classmethod
    def from_options(cls, **options: Any) -> Stepper:  # noqa: ANN401
        """Build the stepper from flat keyword options."""
        ...

    def init(self, ode: IVP) -> StepperState:
        """Create a fresh state for one integration run."""
        ...

    def output(self, state: StepperState) -> tuple[float, FloatArray, FloatArray]:
        """Return ``(t, y, dy)`` of the last accepted step."""
        ...


class FusedStepper(Stepper, Protocol):
    """Stepper that advances by one accepted step in a single call."""

    def onestep(self, solver: Solver, state: StepperState) -> Status:
        """Take one step in place."""
        ...


class SubstepStepper(Stepper, Protocol):
    """Adaptive stepper split into trial, error-control and accept phases."""

    def trialstep(self, solver: Solver, state: StepperState) -> Status:
        """Compute a candidate step into scratch buffers.

        The accepted step held in ``state.step`` must not be touched.
        """
        ...

    def errorcontrol(
        self,
        solver: Solver,
        state: StepperState,
    ) -> tuple[float, Status]:
        """Estimate the trial error (accepted if ``err <= 1``).

        May update adaptive parameters such as the step size, but never the
        accepted solution. Only ``ABORT`` is acted on; other statuses are
        ignored.
        """
        ...

    def accept(self, solver: Solver, state: StepperState) -> Status:
        """Commit the trial step into the accepted-state buffers."""
        ...


def _require(stepper: object, function: str, *, fused: bool) -> Callable[..., Any]:
    method = getattr(stepper, function, None)
    if not callable(method):
        raise_contract_error(stepper, function, fused=fused)
    return method


def _report_abort(stepper: object, state: StepperState, where: str) -> None:
    msg = _ABORT_MSG.format(where=where, stepper=type(stepper).__name__, t=state.step.t)
    reason = getattr(state, "reason", None)
    if reason:
        msg = f"{msg}: {reason}"
    warnings.warn(msg, IntegrationWarning, stacklevel=3)


def onestep(solver: Solver, state: StepperState) -> Status:
    """Advance ``state`` by one accepted step, in place.

    Fused steppers are called directly. Sub-step steppers run the trial /
    error-control / accept loop until a trial is accepted or the integration
    ends. The loop has no retry limit of its own: bounding retries is the
    stepper's job (see ``AdaptiveConfig.max_reject``).

    Args:
        solver: Solver providing the problem and stepper.
        state: Stepper state, mutated in place.

    Raises:
        StepperContractError: If the stepper lacks a capability marker or the
            functions its capability requires.

    Returns:
        ``Status.CONT`` when a new accepted step is available in ``state``,
        otherwise the terminal status.
    """
    stepper = solver.stepper
    capability = getattr(stepper, "capability", None)

    if capability is Capability.FUSED:
        fused = _require(stepper, "onestep", fused=True)
        status = fused(solver, state)
        if status is Status.ABORT:
            _report_abort(stepper, state, "onestep")
        return status

    if capability is not Capability.SUBSTEP:
        raise StepperContractError(
            _NO_CAPABILITY_MSG.format(stepper=type(stepper).__name__)
        )

    trialstep = _require(stepper, "trialstep", fused=False)
    errorcontrol = _require(stepper, "errorcontrol", fused=False)
    accept = _require(stepper, "accept", fused=False)

    while True:
        status = trialstep(solver, state)
        if status is Status.ABORT:
            _report_abort(stepper, state, "trialstep")
            return Status.ABORT
        if status is Status.FINISH:
            return Status.FINISH

        err, status_err = errorcontrol(solver, state)
        if status_err is Status.ABORT:
            _report_abort(stepper, state, "errorcontrol")
            return Status.ABORT

        if err <= 1.0 and status is Status.CONT:
            status_acc = accept(solver, state)
            if status_acc is Status.ABORT:
                _report_abort(stepper, state, "accept")
                return Status.ABORT
            return Status.CONT
        # rejected: retry with the step size/order updated by errorcontrol


# =============================================================================
# Solver + iteration triad
# =============================================================================


@dataclass(slots=True, frozen=True)
class Solver:
    """Read-only pairing of a problem and a stepper.

    Attributes:
        ode: Problem to integrate.
        stepper: Stepper (carries its own options).
    """

    ode: IVP
    stepper: Stepper

    @property
    def direction(self) -> float:
        """Direction of integration, ``sign(tstop - t0)`` (``+1`` if equal)."""
        tstop = float(getattr(self.stepper, "tstop", np.inf))
        return -1.0 if tstop < self.ode.t0 else 1.0

    def start(self) -> SolverCursor:
        """Build a cursor with freshly initialized stepper state."""
        return SolverCursor(self, self.stepper.init(self.ode))

    def __iter__(self) -> Iterator[tuple[float, FloatArray]]:
        """Yield ``(t, y)`` per accepted step (``y`` aliases internal buffers)."""
        cursor = self.start()
        while not cursor.advance():
            yield cursor.current()


class SolverCursor:
    """Two-phase cursor over one integration run.

    ``advance()`` computes the next accepted step and returns whether the
    sequence is exhausted; ``current()`` reads the step without side effects.
    The first ``advance()`` exposes the initial condition without stepping.
    """

    __slots__ = ("_started", "solver", "state", "status")

    def __init__(self, solver: Solver, state: StepperState) -> None:
        """Initialize SolverCursor.

        Args:
            solver: Solver being iterated.
            state: Stepper state owned by this cursor.
        """
        self.solver = solver
        self.state = state
        self.status = Status.CONT
        self._started = False

    @property
    def exhausted(self) -> bool:
        """Whether the run has ended (normally or not)."""
        return self.status is not Status.CONT

    def advance(self) -> bool:
        """Take the next step.

        Returns:
            True if the iteration is exhausted, False if a new step is ready.
        """
        if self.status is not Status.CONT:
            return True
        if not self._started:
            self._started = True
            return False
        self.status = onestep(self.solver, self.state)
        return self.status is not Status.CONT

    def current(self) -> tuple[float, FloatArray]:
        """Return ``(t, y)`` of the current step."""
        t, y, _dy = self.solver.stepper.output(self.state)
        return t, y


# =============================================================================
# Construction / materialization
# =============================================================================


def solve(
    ode: IVP,
    stepper: type[Stepper] | Stepper,
    **options: Any,  # noqa: ANN401
) -> Solver:
    """Pair a problem with a stepper, rejecting unsupported combinations.

    Args:
        ode: Problem to integrate.
        stepper: Stepper class (built from ``options``) or a stepper instance.
        **options: Flat stepper options (for example ``tstop``, ``rtol``).

    Raises:
        UnsupportedPairingError: If the stepper does not support the problem kind.
        ConfigurationError: If options are given with a stepper instance or are
            not recognized by the stepper.

    Returns:
        Solver for the pair.
    """
    supported = frozenset(getattr(stepper, "supports", frozenset()))
    if ode.kind not in supported:
        raise_unsupported_pairing(
            problem=ode,
            stepper=stepper,
            kind=ode.kind,
            supported=supported,
        )

    if isinstance(stepper, type):
        return Solver(ode, stepper.from_options(**options))

    if options:
        raise_invalid_options(unknown=options, detail=_INSTANCE_OPTIONS_MSG)
    return Solver(ode, stepper)


def collect(
    solver: Iterable[tuple[float, FloatArray]],
) -> list[tuple[float, FloatArray]]:
    """Materialize a solver (or dense output) into a list of ``(t, y)`` pairs.

    Args:
        solver: Any iterable of ``(t, y)`` pairs, typically a Solver or DenseOutput.

    Returns:
        List of pairs; each ``y`` is an independent copy.
    """
    return [(float(t), np.array(y, copy=True)) for t, y in solver]
