# src/ivp_engine/steppers.py
"""Concrete steppers implementing the ivp_engine stepping contract.

Supported steppers (registry names in parentheses):
    - ForwardEuler ("forward-euler"): explicit Euler with a fixed step size.
      Implements the fused ``onestep`` directly (nothing to retry).
    - Euler ("euler"): explicit Euler (order 1), adaptive via step doubling.
    - Heun ("heun"): explicit Heun / RK2 (order 2), embedded Euler estimator.
    - BackwardEuler ("backward-euler"): implicit Euler (order 1) solved with a
      simplified Newton iteration, adaptive via step doubling. Works on both
      explicit and implicit problems.

Adaptive steppers split each step into ``trialstep`` (candidate into scratch
buffers), ``errorcontrol`` (RMS scaled error norm + safety-factor step size
proposal) and ``accept`` (commit into ``state.step``), and are driven by
:func:`ivp_engine.core.onestep`.

Direction and end time:
    Integration runs from ``t0`` towards ``tstop`` (forwards or backwards).
    The step that would cross ``tstop`` is shortened to land exactly on it;
    the next ``trialstep`` then returns ``Status.FINISH``.

Failure policy:
    Steppers never raise for numerical trouble during a run. They record a
    human-readable ``state.reason`` and return ``Status.ABORT`` when:
    - ``max_reject`` consecutive trials are rejected,
    - the proposed step size falls to ``dt_min`` (or below time resolution),
    - ``max_steps`` accepted steps were taken,
    - the accepted state is not finite,
    - the Newton iteration matrix is singular (BackwardEuler).

Performance hygiene:
    - All scratch arrays are preallocated per run in :class:`AdaptiveState`.
    - Explicit kernels use in-place NumPy ops and np.copyto.
    - The derivative at the accepted step is stored and reused as the first
      stage of the next trial.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar, Final, Literal

import numpy as np
from numpy.typing import NDArray

from .core import Capability, Status, Step
from .errors import raise_invalid_options
from .linalg import factorize, iteration_matrix

if TYPE_CHECKING:
    from .core import Solver
    from .linalg import LinearSolver
    from .problem import IVP, RHSFunction


# =============================================================================
# Errors / messages
# =============================================================================

_RHS_SHAPE_ERROR_MSG: Final[str] = (
    "rhs shape {actual} does not match expected {expected}"
)
_UNKNOWN_METHOD_ERROR_MSG: Final[str] = "Unknown method: {method}"
_FIXED_STEP_MSG: Final[str] = "ForwardEuler needs `dt_init` when `tstop` is unbounded"
_FIXED_STEP_SIZE_MSG: Final[str] = (
    "ForwardEuler needs a positive finite `dt_init`, got {dt!r}"
)

_TOO_MANY_REJECTS_MSG: Final[str] = "Too many rejected steps ({n}) in a row"
_DT_UNDERFLOW_MSG: Final[str] = "Step size {dt!r} fell below dt_min"
_DT_RESOLUTION_MSG: Final[str] = (
    "Step size {dt!r} is below the time resolution at t={t!r}"
)
_MAX_STEPS_MSG: Final[str] = "Exceeded max_steps={n}"
_NON_FINITE_MSG: Final[str] = "Accepted state is not finite at t={t!r}"
_SINGULAR_MSG: Final[str] = "Newton iteration matrix is singular at t={t!r}"

FloatArray = NDArray[np.floating]
MethodName = Literal["forward-euler", "euler", "heun", "backward-euler"]


# =============================================================================
# Configuration dataclasses
# =============================================================================


@dataclass(slots=True, frozen=True)
class DtControllerConfig:
    """Configuration for adaptive timestep control.

    Attributes:
        dt_min: Minimum allowed |dt|; reaching it after a rejection aborts.
        dt_max: Maximum allowed |dt|.
        safety: Safety factor applied to dt updates.
        fac_min: Minimum multiplicative change factor.
        fac_max: Maximum multiplicative change factor.
    """

    dt_min: float = 0.0
    dt_max: float = float("inf")
    safety: float = 0.9
    fac_min: float = 0.2
    fac_max: float = 5.0


@dataclass(slots=True, frozen=True)
class AdaptiveConfig:
    """Configuration for adaptive stepping.

    Attributes:
        rtol: Relative tolerance.
        atol: Absolute tolerance (scalar or array-like).
        dt_init: Optional initial |dt|; if None, it is estimated from the
            initial data (and is the fixed step size of ForwardEuler).
        max_reject: Maximum number of consecutive rejected trials.
        max_steps: Maximum number of accepted steps per run.
    """

    rtol: float = 1e-6
    atol: float | FloatArray = 1e-9
    dt_init: float | None = None
    max_reject: int = 25
    max_steps: int = 1_000_000


@dataclass(slots=True, frozen=True)
class NewtonConfig:
    """Configuration of the simplified Newton iteration of implicit steppers.

    Attributes:
        max_iter: Iterations before a trial is declared non-convergent.
        tol: Convergence threshold on the scaled RMS norm of the update.
    """

    max_iter: int = 10
    tol: float = 1e-3


@dataclass(slots=True, frozen=True)
class StepperOptions:
    """Options shared by all steppers.

    Attributes:
        tstop: Final time (``inf``/``-inf`` for unbounded runs).
        adaptive_cfg: Tolerances and limits.
        dt_controller: Step size controller parameters.
        newton: Newton iteration parameters (implicit steppers only).
    """

    tstop: float = float("inf")
    adaptive_cfg: AdaptiveConfig = AdaptiveConfig()
    dt_controller: DtControllerConfig = DtControllerConfig()
    newton: NewtonConfig = NewtonConfig()


def _field_names(cls: type) -> frozenset[str]:
    return frozenset(f.name for f in fields(cls))


_ADAPTIVE_KEYS: Final[frozenset[str]] = _field_names(AdaptiveConfig)
_CONTROLLER_KEYS: Final[frozenset[str]] = _field_names(DtControllerConfig)
_NEWTON_PREFIX: Final[str] = "newton_"
_NEWTON_KEYS: Final[frozenset[str]] = frozenset(
    f"{_NEWTON_PREFIX}{name}" for name in _field_names(NewtonConfig)
)


def build_stepper_options(**options: Any) -> StepperOptions:  # noqa: ANN401
    """Build StepperOptions from flat keyword options.

    Recognized keys: ``tstop``, the AdaptiveConfig fields (``rtol``, ``atol``,
    ``dt_init``, ``max_reject``, ``max_steps``), the DtControllerConfig fields
    (``dt_min``, ``dt_max``, ``safety``, ``fac_min``, ``fac_max``) and
    ``newton_max_iter``/``newton_tol``.

    Args:
        **options: Flat options.

    Raises:
        ConfigurationError: If an option is not recognized.

    Returns:
        StepperOptions instance.
    """
    unknown = (
        set(options) - _ADAPTIVE_KEYS - _CONTROLLER_KEYS - _NEWTON_KEYS - {"tstop"}
    )
    if unknown:
        raise_invalid_options(unknown=unknown)

    adaptive = {k: v for k, v in options.items() if k in _ADAPTIVE_KEYS}
    controller = {k: v for k, v in options.items() if k in _CONTROLLER_KEYS}
    newton = {
        k.removeprefix(_NEWTON_PREFIX): v
        for k, v in options.items()
        if k in _NEWTON_KEYS
    }

    return StepperOptions(
        tstop=float(options.get("tstop", float("inf"))),
        adaptive_cfg=AdaptiveConfig(**adaptive),
        dt_controller=DtControllerConfig(**controller),
        newton=NewtonConfig(**newton),
    )


# =============================================================================
# Per-run state
# =============================================================================


@dataclass(slots=True)
class AdaptiveState:
    """Working memory of one stepper run.

    Attributes:
        step: Last accepted step (t, y, dy, dt).
        td: Direction of integration (+1 or -1).
        dt: Proposed |dt| for the next trial.
        dt_trial: Signed step size of the current trial.
        t_try: End time of the current trial.
        y_try: Candidate state of the current trial.
        dy_try: Derivative at the candidate state.
        err: Error estimate of the current trial.
        n_accept: Number of accepted steps.
        n_reject: Number of rejected trials.
        n_rhs: Number of F/G evaluations made by the stepper.
        rejects: Consecutive rejections since the last accepted step.
        reason: Why the run was aborted, if it was.
    """

    step: Step
    td: float
    dt: float
    dt_trial: float = 0.0
    t_try: float = 0.0
    y_try: FloatArray = field(default_factory=lambda: np.zeros(0))
    dy_try: FloatArray = field(default_factory=lambda: np.zeros(0))
    err: FloatArray = field(default_factory=lambda: np.zeros(0))

    # Kernel scratch
    y_full: FloatArray = field(default_factory=lambda: np.zeros(0))
    y_half: FloatArray = field(default_factory=lambda: np.zeros(0))
    f_pred: FloatArray = field(default_factory=lambda: np.zeros(0))
    state_pred: FloatArray = field(default_factory=lambda: np.zeros(0))
    scale: FloatArray = field(default_factory=lambda: np.zeros(0))
    ratio: FloatArray = field(default_factory=lambda: np.zeros(0))

    n_accept: int = 0
    n_reject: int = 0
    n_rhs: int = 0
    rejects: int = 0
    reason: str | None = None


def _initial_dt(ode: IVP, options: StepperOptions) -> float:
    """Pick the first |dt| from options or from the scale of the initial data."""
    cfg = options.adaptive_cfg
    ctrl = options.dt_controller
    span = abs(options.tstop - ode.t0)

    if cfg.dt_init is not None and np.isfinite(cfg.dt_init) and cfg.dt_init > 0.0:
        dt = float(cfg.dt_init)
    else:
        y0 = np.asarray(ode.y0, dtype=np.float64)
        dy0 = np.asarray(ode.dy0, dtype=np.float64)
        scale = cfg.atol + cfg.rtol * np.abs(y0)
        d0 = float(np.sqrt(np.mean((y0 / scale) ** 2)))
        d1 = float(np.sqrt(np.mean((dy0 / scale) ** 2)))
        dt = 1e-6 if (d0 < 1e-5 or d1 < 1e-5) else 0.01 * d0 / d1

    dt = min(dt, ctrl.dt_max)
    if span > 0.0:
        dt = min(dt, span)
    return max(dt, ctrl.dt_min)


def _make_state(ode: IVP, options: StepperOptions) -> AdaptiveState:
    step = Step.initial(ode)
    td = -1.0 if options.tstop < ode.t0 else 1.0
    return AdaptiveState(
        step=step,
        td=td,
        dt=_initial_dt(ode, options),
        t_try=step.t,
        y_try=np.zeros_like(step.y),
        dy_try=np.zeros_like(step.y),
        err=np.zeros_like(step.y),
        y_full=np.zeros_like(step.y),
        y_half=np.zeros_like(step.y),
        f_pred=np.zeros_like(step.y),
        state_pred=np.zeros_like(step.y),
        scale=np.zeros_like(step.y),
        ratio=np.zeros_like(step.y),
    )


# =============================================================================
# Shared kernels: RHS, error norm, dt controller, trial window, commit
# =============================================================================


def _rhs_into(
    out: FloatArray,
    rhs_func: RHSFunction,
    t: float,
    y: FloatArray,
    state: AdaptiveState,
) -> None:
    """Evaluate RHS into out with shape enforcement.

    Raises:
        ValueError: If RHS returns an array with an unexpected shape.
    """
    f = np.asarray(rhs_func(float(t), y), dtype=np.float64)
    if f.shape != out.shape:
        raise ValueError(
            _RHS_SHAPE_ERROR_MSG.format(actual=f.shape, expected=out.shape)
        )
    state.n_rhs += 1
    np.copyto(out, f)


def error_norm(
    state: AdaptiveState,
    *,
    rtol: float,
    atol: float | FloatArray,
) -> float:
    """
    Compute the RMS scaled norm of ``state.err``.

    The scale is ``atol + rtol * max(|y_try|, |y|)`` per component.

    Args:
        state: Stepper state holding err, y_try and the accepted step.
        rtol: Relative tolerance.
        atol: Absolute tolerance.

    Returns:
        RMS scaled error norm (``inf`` if not finite).
    """
    np.abs(state.y_try, out=state.scale)
    np.abs(state.step.y, out=state.ratio)
    np.maximum(state.scale, state.ratio, out=state.scale)

    state.scale *= float(rtol)
    if isinstance(atol, (float, int, np.floating)):
        state.scale += float(atol)
    else:
        state.scale += np.asarray(atol, dtype=np.float64)

    np.divide(state.err, state.scale, out=state.ratio)
    v = float(np.sqrt(np.mean(state.ratio * state.ratio)))
    if not np.isfinite(v):
        return float("inf")
    return v


def _begin_trial(state: AdaptiveState, options: StepperOptions) -> Status:
    """Check the end conditions and fix the signed size of the next trial."""
    t = state.step.t
    td = state.td
    if td * t >= td * options.tstop:
        return Status.FINISH

    max_steps = options.adaptive_cfg.max_steps
    if state.n_accept >= max_steps:
        state.reason = _MAX_STEPS_MSG.format(n=max_steps)
        return Status.ABORT

    h = state.dt
    remaining = abs(options.tstop - t)
    if h >= remaining:
        state.dt_trial = options.tstop - t
        state.t_try = float(options.tstop)
    else:
        state.dt_trial = td * h
        state.t_try = t + state.dt_trial
        if td * state.t_try > td * options.tstop:
            state.t_try = float(options.tstop)
    return Status.CONT


def _control(
    state: AdaptiveState,
    options: StepperOptions,
    order: int,
) -> tuple[float, Status]:
    """Shared errorcontrol: estimate, count rejections, propose the next |dt|.

    The step factor is ``safety * err**(-1/(order+1))`` limited to
    ``[fac_min, fac_max]`` (``fac_max`` for a zero error); the new |dt| is
    then limited to ``[dt_min, dt_max]``.
    """
    cfg = options.adaptive_cfg
    ctrl = options.dt_controller
    err = error_norm(state, rtol=cfg.rtol, atol=cfg.atol)

    fac = ctrl.fac_max
    if err > 0.0:
        fac = ctrl.safety * err ** (-1.0 / (order + 1))
        fac = min(ctrl.fac_max, max(ctrl.fac_min, fac))
    dt_new = min(ctrl.dt_max, max(ctrl.dt_min, abs(state.dt_trial) * fac))

    if err > 1.0:
        state.n_reject += 1
        state.rejects += 1
        if state.rejects >= cfg.max_reject:
            state.reason = _TOO_MANY_REJECTS_MSG.format(n=state.rejects)
            return err, Status.ABORT
        if ctrl.dt_min > 0.0 and dt_new <= ctrl.dt_min:
            state.reason = _DT_UNDERFLOW_MSG.format(dt=dt_new)
            return err, Status.ABORT
        t = state.step.t
        if t + state.td * dt_new == t:
            state.reason = _DT_RESOLUTION_MSG.format(dt=dt_new, t=t)
            return err, Status.ABORT

    state.dt = dt_new
    return err, Status.CONT


def _commit(
    solver: Solver,
    state: AdaptiveState,
    *,
    derivative_ready: bool = False,
) -> Status:
    """Copy the trial into the accepted step (evaluating F there if needed)."""
    if not np.all(np.isfinite(state.y_try)):
        state.reason = _NON_FINITE_MSG.format(t=state.t_try)
        return Status.ABORT
    if not derivative_ready:
        _rhs_into(state.dy_try, solver.ode.F, state.t_try, state.y_try, state)
    state.step.assign(state.t_try, state.y_try, state.dy_try, dt=state.dt_trial)
    state.n_accept += 1
    state.rejects = 0
    return Status.CONT


def _output(state: AdaptiveState) -> tuple[float, FloatArray, FloatArray]:
    return state.step.t, state.step.y, state.step.dy


# =============================================================================
# Explicit steppers
# =============================================================================


@dataclass(slots=True, frozen=True)
class ForwardEuler:
    """Explicit Euler with a fixed step size (``dt_init``).

    Without ``dt_init`` the step is a hundredth of ``|tstop - t0|``.
    """

    name: ClassVar[str] = "forward-euler"
    capability: ClassVar[Capability] = Capability.FUSED
    supports: ClassVar[frozenset[str]] = frozenset({"explicit"})
    order: ClassVar[int] = 1

    options: StepperOptions = StepperOptions()

    def __post_init__(self) -> None:
        """Validate that a step size can be derived.

        Raises:
            ConfigurationError: If neither dt_init nor a finite tstop is given,
                or dt_init is not a positive finite number.
        """
        dt_init = self.options.adaptive_cfg.dt_init
        if dt_init is None:
            if not np.isfinite(self.options.tstop):
                raise_invalid_options(detail=_FIXED_STEP_MSG)
        elif not (np.isfinite(dt_init) and dt_init > 0.0):
            raise_invalid_options(detail=_FIXED_STEP_SIZE_MSG.format(dt=dt_init))

    @classmethod
    def from_options(cls, **options: Any) -> ForwardEuler:  # noqa: ANN401
        """Build from flat options (see build_stepper_options)."""
        return cls(options=build_stepper_options(**options))

    @property
    def tstop(self) -> float:
        """Final time."""
        return self.options.tstop

    def init(self, ode: IVP) -> AdaptiveState:
        """Create the per-run state."""
        state = _make_state(ode, self.options)
        if self.options.adaptive_cfg.dt_init is None:
            state.dt = abs(self.options.tstop - ode.t0) / 100.0
        else:
            state.dt = float(self.options.adaptive_cfg.dt_init)
        return state

    def output(self, state: AdaptiveState) -> tuple[float, FloatArray, FloatArray]:
        """Return (t, y, dy) of the last accepted step."""
        return _output(state)

    def onestep(self, solver: Solver, state: AdaptiveState) -> Status:
        """Take one fixed Euler step in place."""
        status = _begin_trial(state, self.options)
        if status is not Status.CONT:
            return status

        np.multiply(state.step.dy, state.dt_trial, out=state.y_try)
        state.y_try += state.step.y
        return _commit(solver, state)


@dataclass(slots=True, frozen=True)
class Euler:
    """Explicit Euler (order 1), adaptive via step doubling.

    The trial is two half steps; the error estimate is their difference to a
    single full step.
    """

    name: ClassVar[str] = "euler"
    capability: ClassVar[Capability] = Capability.SUBSTEP
    supports: ClassVar[frozenset[str]] = frozenset({"explicit"})
    order: ClassVar[int] = 1

    options: StepperOptions = StepperOptions()

    @classmethod
    def from_options(cls, **options: Any) -> Euler:  # noqa: ANN401
        """Build from flat options (see build_stepper_options)."""
        return cls(options=build_stepper_options(**options))

    @property
    def tstop(self) -> float:
        """Final time."""
        return self.options.tstop

    def init(self, ode: IVP) -> AdaptiveState:
        """Create the per-run state."""
        return _make_state(ode, self.options)

    def output(self, state: AdaptiveState) -> tuple[float, FloatArray, FloatArray]:
        """Return (t, y, dy) of the last accepted step."""
        return _output(state)

    def trialstep(self, solver: Solver, state: AdaptiveState) -> Status:
        """Euler step with step-doubling error estimate into y_try / err."""
        status = _begin_trial(state, self.options)
        if status is not Status.CONT:
            return status

        t = state.step.t
        y = state.step.y
        f_n = state.step.dy
        dt = state.dt_trial

        np.multiply(f_n, dt, out=state.y_full)
        state.y_full += y

        np.multiply(f_n, 0.5 * dt, out=state.y_half)
        state.y_half += y

        _rhs_into(state.f_pred, solver.ode.F, t + 0.5 * dt, state.y_half, state)
        np.multiply(state.f_pred, 0.5 * dt, out=state.y_try)
        state.y_try += state.y_half

        np.subtract(state.y_try, state.y_full, out=state.err)
        return Status.CONT

    def errorcontrol(
        self,
        solver: Solver,  # noqa: ARG002
        state: AdaptiveState,
    ) -> tuple[float, Status]:
        """Scaled error norm and next step size."""
        return _control(state, self.options, self.order)

    def accept(self, solver: Solver, state: AdaptiveState) -> Status:
        """Commit the trial."""
        return _commit(solver, state)


@dataclass(slots=True, frozen=True)
class Heun:
    """Explicit Heun / RK2 (order 2) with an embedded Euler estimator."""

    name: ClassVar[str] = "heun"
    capability: ClassVar[Capability] = Capability.SUBSTEP
    supports: ClassVar[frozenset[str]] = frozenset({"explicit"})
    order: ClassVar[int] = 2

    options: StepperOptions = StepperOptions()

    @classmethod
    def from_options(cls, **options: Any) -> Heun:  # noqa: ANN401
        """Build from flat options (see build_stepper_options)."""
        return cls(options=build_stepper_options(**options))

    @property
    def tstop(self) -> float:
        """Final time."""
        return self.options.tstop

    def init(self, ode: IVP) -> AdaptiveState:
        """Create the per-run state."""
        return _make_state(ode, self.options)

    def output(self, state: AdaptiveState) -> tuple[float, FloatArray, FloatArray]:
        """Return (t, y, dy) of the last accepted step."""
        return _output(state)

    def trialstep(self, solver: Solver, state: AdaptiveState) -> Status:
        """Heun step into y_try; Euler predictor difference into err."""
        status = _begin_trial(state, self.options)
        if status is not Status.CONT:
            return status

        y = state.step.y
        f_n = state.step.dy
        dt = state.dt_trial

        np.multiply(f_n, dt, out=state.state_pred)
        state.state_pred += y

        _rhs_into(state.f_pred, solver.ode.F, state.t_try, state.state_pred, state)

        np.add(f_n, state.f_pred, out=state.y_try)
        state.y_try *= 0.5 * dt
        state.y_try += y

        np.subtract(state.y_try, state.state_pred, out=state.err)
        return Status.CONT

    def errorcontrol(
        self,
        solver: Solver,  # noqa: ARG002
        state: AdaptiveState,
    ) -> tuple[float, Status]:
        """Scaled error norm and next step size."""
        return _control(state, self.options, self.order)

    def accept(self, solver: Solver, state: AdaptiveState) -> Status:
        """Commit the trial."""
        return _commit(solver, state)


# =============================================================================
# Implicit stepper
# =============================================================================


@dataclass(slots=True, frozen=True)
class BackwardEuler:
    """Implicit Euler (order 1), adaptive via step doubling.

    Each implicit stage solves, for explicit problems,
    ``y - y_n - h F(t + h, y) = 0`` with iteration matrix ``I - h dF/dy``, and
    for implicit problems ``G(t + h, y, (y - y_n)/h) = 0`` with iteration
    matrix ``dG/dy + (1/h) dG/d(dy)``. The matrix is factorized once per
    stage (simplified Newton). A stage that does not converge makes the trial
    error infinite, so the step is retried with a smaller size.
    """

    name: ClassVar[str] = "backward-euler"
    capability: ClassVar[Capability] = Capability.SUBSTEP
    supports: ClassVar[frozenset[str]] = frozenset({"explicit", "implicit"})
    order: ClassVar[int] = 1

    options: StepperOptions = StepperOptions()

    @classmethod
    def from_options(cls, **options: Any) -> BackwardEuler:  # noqa: ANN401
        """Build from flat options (see build_stepper_options)."""
        return cls(options=build_stepper_options(**options))

    @property
    def tstop(self) -> float:
        """Final time."""
        return self.options.tstop

    def init(self, ode: IVP) -> AdaptiveState:
        """Create the per-run state."""
        return _make_state(ode, self.options)

    def output(self, state: AdaptiveState) -> tuple[float, FloatArray, FloatArray]:
        """Return (t, y, dy) of the last accepted step."""
        return _output(state)

    # ------------------------------------------------------------------
    # Newton stage
    # ------------------------------------------------------------------

    def _stage_solver(
        self,
        ode: IVP,
        t_new: float,
        y_guess: FloatArray,
        dy_guess: FloatArray,
        h: float,
    ) -> LinearSolver:
        if ode.kind == "explicit":
            jac = ode.J(t_new, y_guess)
            return factorize(iteration_matrix(jac, a=1.0, b=-h))
        jac = ode.J(t_new, y_guess, dy_guess, 1.0 / h)
        return factorize(iteration_matrix(jac, a=0.0, b=1.0))

    def _residual(
        self,
        ode: IVP,
        t_new: float,
        y: FloatArray,
        y_n: FloatArray,
        h: float,
        state: AdaptiveState,
    ) -> FloatArray:
        state.n_rhs += 1
        if ode.kind == "explicit":
            return y - y_n - h * np.asarray(ode.F(t_new, y), dtype=np.float64)
        return np.asarray(ode.G(t_new, y, (y - y_n) / h), dtype=np.float64)

    def _stage(
        self,
        ode: IVP,
        state: AdaptiveState,
        stage: tuple[float, float, FloatArray, FloatArray],
        out: FloatArray,
    ) -> bool:
        """Solve one implicit Euler stage from (t, y_n) over h into ``out``.

        ``stage`` is ``(t, h, y_n, dy_n)``; ``dy_n`` seeds the predictor.
        On return ``state.f_pred`` holds the derivative at ``out``.

        Returns:
            True if the Newton iteration converged.
        """
        t, h, y_n, dy_n = stage
        cfg = self.options.adaptive_cfg
        newton = self.options.newton
        t_new = t + h

        np.multiply(dy_n, h, out=out)
        out += y_n
        solve_lin = self._stage_solver(ode, t_new, out, dy_n, h)

        converged = False
        for _ in range(newton.max_iter):
            delta = solve_lin(self._residual(ode, t_new, out, y_n, h, state))
            out -= delta
            scale = cfg.atol + cfg.rtol * np.abs(out)
            if not np.all(np.isfinite(out)):
                break
            if float(np.sqrt(np.mean((delta / scale) ** 2))) <= newton.tol:
                converged = True
                break

        np.subtract(out, y_n, out=state.f_pred)
        state.f_pred /= h
        return converged

    # ------------------------------------------------------------------
    # Sub-step contract
    # ------------------------------------------------------------------

    def trialstep(self, solver: Solver, state: AdaptiveState) -> Status:
        """Full step vs two half steps; the two-half result is the candidate."""
        status = _begin_trial(state, self.options)
        if status is not Status.CONT:
            return status

        ode = solver.ode
        t = state.step.t
        y = state.step.y
        dt = state.dt_trial

        try:
            ok_full = self._stage(ode, state, (t, dt, y, state.step.dy), state.y_full)
            ok_half = self._stage(
                ode, state, (t, 0.5 * dt, y, state.step.dy), state.y_half
            )
            np.copyto(state.state_pred, state.f_pred)
            ok_two = self._stage(
                ode,
                state,
                (t + 0.5 * dt, 0.5 * dt, state.y_half, state.state_pred),
                state.y_try,
            )
        except np.linalg.LinAlgError:
            state.reason = _SINGULAR_MSG.format(t=t)
            return Status.ABORT

        np.copyto(state.dy_try, state.f_pred)
        if ok_full and ok_half and ok_two:
            np.subtract(state.y_try, state.y_full, out=state.err)
        else:
            state.err.fill(np.inf)
        return Status.CONT

    def errorcontrol(
        self,
        solver: Solver,  # noqa: ARG002
        state: AdaptiveState,
    ) -> tuple[float, Status]:
        """Scaled error norm and next step size."""
        return _control(state, self.options, self.order)

    def accept(self, solver: Solver, state: AdaptiveState) -> Status:
        """Commit the trial (F is re-evaluated there for explicit problems)."""
        return _commit(solver, state, derivative_ready=solver.ode.kind == "implicit")


# =============================================================================
# Registry
# =============================================================================

STEPPERS: Final[dict[str, type[ForwardEuler | Euler | Heun | BackwardEuler]]] = {
    "forward-euler": ForwardEuler,
    "euler": Euler,
    "heun": Heun,
    "backward-euler": BackwardEuler,
}


def get_stepper(method: str) -> type[ForwardEuler | Euler | Heun | BackwardEuler]:
    """Look up a stepper class by (case-insensitive) registry name.

    Args:
        method: Method name, for example "heun".

    Raises:
        ConfigurationError: If the method is unknown.

    Returns:
        Stepper class.
    """
    method_norm = str(method).strip().lower()
    if method_norm not in STEPPERS:
        raise_invalid_options(detail=_UNKNOWN_METHOD_ERROR_MSG.format(method=method))
    return STEPPERS[method_norm]
