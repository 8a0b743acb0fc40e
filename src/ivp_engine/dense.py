# src/ivp_engine/dense.py
"""Dense output: resample a stepper's adaptive grid at requested times.

:class:`DenseOutput` wraps an inner :class:`~ivp_engine.core.Solver`. For
each requested output time it advances the inner stepper until two
consecutive accepted steps bracket that time (:func:`next_interval`), then
interpolates between them (:func:`interpolate`, cubic Hermite by default).

Output semantics:
    - The first emitted pair is always the initial condition ``(t0, y0)``,
      copied directly from the inner stepper (no interpolation). Requested
      times not strictly after ``t0`` in the direction of integration are
      skipped.
    - Afterwards one pair is emitted per requested time, in order.
    - The inner stepper is built with ``tstop = tout[-1]`` so it finishes
      exactly on the last requested time.
    - If the inner stepper aborts or finishes before a requested time is
      bracketed, an :class:`~ivp_engine.errors.IntegrationWarning` is emitted
      and the iteration ends with ``Status.ABORT`` without producing that
      time.

Interpolation dispatch:
    :func:`interpolate` is a ``functools.singledispatch`` function keyed on the
    type of the inner stepper state. Steppers with a better continuous
    extension register their own implementation for their state type.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from functools import singledispatch
from typing import TYPE_CHECKING, Any, Final

import numpy as np

from .core import Solver, Status, Step, StepperState, onestep, solve
from .errors import IntegrationWarning, NonMonotonicStepError, raise_invalid_options

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from .core import Stepper
    from .problem import IVP, FloatArray


_NO_FINAL_TIME_MSG: Final[str] = "dense output needs `tout` or `tstop`"
_EMPTY_TOUT_MSG: Final[str] = "tout must contain at least one time"
_NONFINITE_TOUT_MSG: Final[str] = "tout must contain only finite times, got {tout}"
_TSTOP_MISMATCH_MSG: Final[str] = (
    "tstop={tstop} does not match the last requested output time {last}"
)
_NON_MONOTONIC_MSG: Final[str] = (
    "Stepper {stepper} produced t={t_new!r} after t={t_prev!r}; accepted steps "
    "must advance strictly in the direction of integration"
)
_OUTPUT_ABORT_MSG: Final[str] = (
    "Dense output stopped before output time {t!r}: the inner integration "
    "aborted (see the preceding warning)"
)
_OUTPUT_EXHAUSTED_MSG: Final[str] = (
    "Dense output stopped: the integration finished before reaching output "
    "time {t!r}"
)
_UNREACHABLE_TOUT_MSG: Final[str] = (
    "stepper tstop={tstop} does not reach the last requested output time {last}"
)


# =============================================================================
# Options / state
# =============================================================================


@dataclass(slots=True, frozen=True)
class DenseOptions:
    """Requested output times for dense output.

    Attributes:
        tout: Output times, sorted in the direction of integration (the caller
            is responsible for the ordering).
        tstop: Final time handed to the inner stepper (``tout[-1]``).
    """

    tout: tuple[float, ...]
    tstop: float


@dataclass(slots=True)
class DenseState:
    """Working memory of one dense-output run.

    Attributes:
        tout_i: Index of the next requested output time.
        step_prev: Earlier end of the interpolation bracket.
        step_out: Output buffer, overwritten for every emitted time.
        inner_state: State of the wrapped stepper.
        first: Whether the initial condition still has to be emitted.
    """

    tout_i: int
    step_prev: Step
    step_out: Step
    inner_state: StepperState
    first: bool = True

    @property
    def step(self) -> Step:
        """The most recently emitted step."""
        return self.step_out


# =============================================================================
# Interpolation
# =============================================================================


def hermite_interpolate(step1: Step, step2: Step, t: float, out: Step) -> None:
    """Cubic Hermite interpolation between two steps, written into ``out``.

    Matches value and derivative at both endpoints, so polynomials up to
    degree 3 are reproduced exactly when the endpoint derivatives are exact.
    Requesting an endpoint copies it verbatim; this also covers zero-width
    brackets.

    Args:
        step1: Earlier bracket end ``(t1, y1, dy1)``.
        step2: Later bracket end ``(t2, y2, dy2)``.
        t: Target time, ``t1 <= t <= t2`` (reversed for backward integration).
        out: Step whose ``t``, ``y`` and ``dy`` are overwritten in place.
    """
    if t == step1.t:
        out.assign(t, step1.y, step1.dy)
        return
    if t == step2.t:
        out.assign(t, step2.y, step2.dy)
        return

    h = step2.t - step1.t
    theta = (t - step1.t) / h
    w = theta * (theta - 1.0)

    # y = (1-θ) y1 + θ y2 + θ(θ-1)[(1-2θ)(y2-y1) + (θ-1) h dy1 + θ h dy2]
    c_y1 = (1.0 - theta) - w * (1.0 - 2.0 * theta)
    c_y2 = theta + w * (1.0 - 2.0 * theta)
    c_dy1 = w * (theta - 1.0) * h
    c_dy2 = w * theta * h

    out.t = float(t)
    np.multiply(step1.y, c_y1, out=out.y)
    out.y += c_y2 * step2.y
    out.y += c_dy1 * step1.dy
    out.y += c_dy2 * step2.dy

    # derivative of the same cubic with respect to t
    d_y = (6.0 * theta * theta - 6.0 * theta) / h
    d_dy1 = 3.0 * theta * theta - 4.0 * theta + 1.0
    d_dy2 = 3.0 * theta * theta - 2.0 * theta
    np.subtract(step1.y, step2.y, out=out.dy)
    out.dy *= d_y
    out.dy += d_dy1 * step1.dy
    out.dy += d_dy2 * step2.dy
    out.dt = None


@singledispatch
def interpolate(
    state: Any,  # noqa: ANN401
    step_prev: Step,
    t: float,
    step_out: Step,
) -> None:
    """Fill ``step_out`` with the solution at ``t`` between two accepted steps.

    The bracket is ``(step_prev, state.step)``. The default is cubic Hermite;
    register a specialised implementation for a stepper state type with
    ``@interpolate.register``.

    Args:
        state: Inner stepper state (holds the later bracket end).
        step_prev: Earlier bracket end.
        t: Target time inside the bracket.
        step_out: Output step, written in place.
    """
    hermite_interpolate(step_prev, state.step, t, step_out)


# =============================================================================
# Bracket search
# =============================================================================


def next_interval(
    solver: Solver,
    state: StepperState,
    step_prev: Step,
    ti: float,
) -> Status:
    """Advance the inner stepper until ``ti`` lies in ``[step_prev.t, t2]``.

    ``t2`` is the time of the inner stepper's current accepted step; the
    comparison is made along the direction of integration. Each time the
    bracket misses, the current step is saved into ``step_prev`` and the
    stepper takes one more accepted step.

    Args:
        solver: Inner solver.
        state: Inner stepper state, advanced in place.
        step_prev: Earlier bracket end, overwritten in place.
        ti: Requested output time.

    Raises:
        NonMonotonicStepError: If the stepper does not advance in time.

    Returns:
        ``Status.CONT`` once bracketed, otherwise the inner stepper's
        terminal status.
    """
    td = solver.direction
    output = solver.stepper.output
    while True:
        t2, y2, dy2 = output(state)
        if td * step_prev.t <= td * ti <= td * t2:
            return Status.CONT

        step_prev.assign(t2, y2, dy2)
        status = onestep(solver, state)
        if status is not Status.CONT:
            return status

        t_new = output(state)[0]
        if td * t_new <= td * step_prev.t:
            raise NonMonotonicStepError(
                _NON_MONOTONIC_MSG.format(
                    stepper=type(solver.stepper).__name__,
                    t_new=t_new,
                    t_prev=step_prev.t,
                )
            )


# =============================================================================
# DenseOutput + iteration triad
# =============================================================================


@dataclass(slots=True, frozen=True)
class DenseOutput:
    """Solver producing values at requested output times.

    Attributes:
        inner: Wrapped solver whose accepted steps are interpolated.
        options: Requested output times.
    """

    inner: Solver
    options: DenseOptions

    @property
    def ode(self) -> IVP:
        """Problem being integrated."""
        return self.inner.ode

    @property
    def direction(self) -> float:
        """Direction of integration of the inner solver."""
        return self.inner.direction

    def start(self) -> DenseCursor:
        """Build a cursor with fresh inner state and output buffers."""
        state = DenseState(
            tout_i=0,
            step_prev=Step.initial(self.ode),
            step_out=Step.initial(self.ode),
            inner_state=self.inner.stepper.init(self.ode),
        )
        return DenseCursor(self, state)

    def __iter__(self) -> Iterator[tuple[float, FloatArray]]:
        """Yield ``(t, y)`` per output time (``y`` aliases the output buffer)."""
        cursor = self.start()
        while not cursor.advance():
            yield cursor.current()


def dense_onestep(dense: DenseOutput, dstate: DenseState) -> Status:
    """Produce the next output value into ``dstate.step_out``.

    Args:
        dense: Dense-output solver.
        dstate: Dense state, mutated in place.

    Returns:
        ``Status.CONT`` if a value was produced, ``Status.FINISH`` once all
        requested times were produced, and ``Status.ABORT`` if the inner
        stepper failed or finished before a requested time.
    """
    inner = dense.inner
    tout = dense.options.tout
    td = inner.direction

    if dstate.first:
        dstate.first = False
        t0, y0, dy0 = inner.stepper.output(dstate.inner_state)
        dstate.step_out.assign(t0, y0, dy0)
        while dstate.tout_i < len(tout) and td * tout[dstate.tout_i] <= td * t0:
            dstate.tout_i += 1
        return Status.CONT

    if dstate.tout_i >= len(tout):
        return Status.FINISH

    ti = tout[dstate.tout_i]
    status = next_interval(inner, dstate.inner_state, dstate.step_prev, ti)
    if status is Status.ABORT:
        warnings.warn(_OUTPUT_ABORT_MSG.format(t=ti), IntegrationWarning, stacklevel=3)
        return Status.ABORT
    if status is Status.FINISH:
        # requested times remain, so an inner finish leaves them unreachable
        warnings.warn(
            _OUTPUT_EXHAUSTED_MSG.format(t=ti), IntegrationWarning, stacklevel=3
        )
        return Status.ABORT

    interpolate(dstate.inner_state, dstate.step_prev, ti, dstate.step_out)
    dstate.tout_i += 1
    return Status.CONT


class DenseCursor:
    """Two-phase cursor over one dense-output run."""

    __slots__ = ("dense", "state", "status")

    def __init__(self, dense: DenseOutput, state: DenseState) -> None:
        """Initialize DenseCursor.

        Args:
            dense: Dense-output solver being iterated.
            state: Dense state owned by this cursor.
        """
        self.dense = dense
        self.state = state
        self.status = Status.CONT

    @property
    def exhausted(self) -> bool:
        """Whether the run has ended (normally or not)."""
        return self.status is not Status.CONT

    def advance(self) -> bool:
        """Produce the next output value.

        Returns:
            True if the iteration is exhausted, False if a new value is ready.
        """
        if self.status is not Status.CONT:
            return True
        self.status = dense_onestep(self.dense, self.state)
        return self.status is not Status.CONT

    def current(self) -> tuple[float, FloatArray]:
        """Return ``(t, y)`` of the last produced value."""
        return self.state.step_out.t, self.state.step_out.y


# =============================================================================
# Construction
# =============================================================================


def _resolve_tout(
    tout: Sequence[float] | FloatArray | None,
    tstop: float | None,
) -> tuple[tuple[float, ...], float]:
    if tout is None:
        if tstop is None:
            raise_invalid_options(detail=_NO_FINAL_TIME_MSG)
        return (float(tstop),), float(tstop)

    times = tuple(float(t) for t in np.asarray(tout, dtype=np.float64).ravel())
    if not times:
        raise_invalid_options(detail=_EMPTY_TOUT_MSG)
    if not all(np.isfinite(times)):
        raise_invalid_options(detail=_NONFINITE_TOUT_MSG.format(tout=list(times)))
    if tstop is not None and float(tstop) != times[-1]:
        raise_invalid_options(
            detail=_TSTOP_MISMATCH_MSG.format(tstop=tstop, last=times[-1])
        )
    return times, times[-1]


def dense(
    ode: IVP,
    stepper: type[Stepper] | Stepper,
    *,
    tout: Sequence[float] | FloatArray | None = None,
    tstop: float | None = None,
    **options: Any,  # noqa: ANN401
) -> DenseOutput:
    """Build a dense-output solver around a stepper.

    Args:
        ode: Problem to integrate.
        stepper: Stepper class or instance for the inner solver. A class is
            built with ``tstop = tout[-1]``; an instance is used as is.
        tout: Requested output times (default ``[tstop]``).
        tstop: Final time, used when ``tout`` is not given.
        **options: Remaining stepper options (for example ``rtol``).

    Raises:
        ConfigurationError: If no final time is given, the times are invalid,
            or a stepper instance stops short of the last output time.
        UnsupportedPairingError: If the stepper does not support the problem.

    Returns:
        DenseOutput solver.
    """
    if not isinstance(stepper, type) and tout is None and tstop is None:
        tstop = float(stepper.tstop)

    times, final = _resolve_tout(tout, tstop)
    if isinstance(stepper, type):
        inner = solve(ode, stepper, tstop=final, **options)
    else:
        inner = solve(ode, stepper, **options)
        reach = float(getattr(inner.stepper, "tstop", np.inf))
        if inner.direction * (reach - final) < 0.0:
            raise_invalid_options(
                detail=_UNREACHABLE_TOUT_MSG.format(tstop=reach, last=final)
            )
    return DenseOutput(inner=inner, options=DenseOptions(tout=times, tstop=final))
