# tests/test_dense.py
"""Tests for ivp_engine.dense (dense output wrapper and interpolation).

Coverage in this file:
1) Cubic Hermite interpolation: exactness on cubics, endpoint copies
2) Bracket search (next_interval) and its monotonicity check
3) Output semantics: first output (t0, y0), one value per requested time,
   backward integration, abort and early-finish propagation
4) Construction: tout/tstop resolution and validation
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
import pytest
from helpers import ScriptedState, ScriptedStepper, make_unit_ode

from ivp_engine.core import Solver, Status, Step, collect
from ivp_engine.dense import (
    DenseOptions,
    DenseOutput,
    dense,
    hermite_interpolate,
    interpolate,
    next_interval,
)
from ivp_engine.errors import (
    ConfigurationError,
    IntegrationWarning,
    NonMonotonicStepError,
)
from ivp_engine.problem import ExplicitODE
from ivp_engine.steppers import Heun

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ivp_engine.problem import IVP

    FloatArray = NDArray[np.floating]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _cubic(t: float) -> float:
    return 1.0 + 2.0 * t - t * t + 0.5 * t**3


def _cubic_dt(t: float) -> float:
    return 2.0 - 2.0 * t + 1.5 * t * t


def _cubic_step(t: float) -> Step:
    return Step(
        t=t,
        y=np.array([_cubic(t), -_cubic(t)]),
        dy=np.array([_cubic_dt(t), -_cubic_dt(t)]),
    )


@dataclass(slots=True)
class _TaggedState(ScriptedState):
    """State type with its own registered interpolation."""


class _TaggedStepper(ScriptedStepper):
    def init(self, ode: IVP) -> _TaggedState:
        return _TaggedState(step=Step.initial(ode))


@interpolate.register
def _interpolate_tagged(
    state: _TaggedState,  # noqa: ARG001
    step_prev: Step,  # noqa: ARG001
    t: float,
    step_out: Step,
) -> None:
    step_out.assign(t, np.full_like(step_out.y, -1.0), step_out.dy)


# -----------------------------------------------------------------------------
# 1) Hermite interpolation
# -----------------------------------------------------------------------------


@pytest.mark.parametrize("t", [0.5, 0.6, 1.0, 1.7, 1.99, 2.0])
def test_hermite_reproduces_cubic_and_its_derivative(t: float) -> None:
    """Cubic Hermite is exact for cubic polynomials, values and derivatives."""
    s1 = _cubic_step(0.5)
    s2 = _cubic_step(2.0)
    out = Step(t=np.nan, y=np.zeros(2), dy=np.zeros(2))

    hermite_interpolate(s1, s2, t, out)

    assert out.t == t
    np.testing.assert_allclose(
        out.y, [_cubic(t), -_cubic(t)], rtol=1e-12, atol=1e-12
    )
    np.testing.assert_allclose(
        out.dy, [_cubic_dt(t), -_cubic_dt(t)], rtol=1e-12, atol=1e-12
    )


def test_hermite_endpoints_are_copied_exactly() -> None:
    """Requesting a bracket end copies it bit for bit into the output buffer."""
    s1 = Step(t=0.0, y=np.array([0.1, 0.2]), dy=np.array([0.3, 0.4]))
    s2 = Step(t=0.3, y=np.array([1.1, 1.2]), dy=np.array([1.3, 1.4]))
    out = Step(t=np.nan, y=np.zeros(2), dy=np.zeros(2))
    y_buffer = out.y

    hermite_interpolate(s1, s2, 0.0, out)
    np.testing.assert_array_equal(out.y, s1.y)
    np.testing.assert_array_equal(out.dy, s1.dy)

    hermite_interpolate(s1, s2, 0.3, out)
    np.testing.assert_array_equal(out.y, s2.y)
    np.testing.assert_array_equal(out.dy, s2.dy)
    assert out.y is y_buffer


def test_hermite_zero_width_bracket() -> None:
    """t1 == t2 == t does not divide by zero."""
    s = Step(t=1.0, y=np.array([2.0]), dy=np.array([3.0]))
    out = Step(t=np.nan, y=np.zeros(1), dy=np.zeros(1))
    hermite_interpolate(s, s.copy(), 1.0, out)
    np.testing.assert_array_equal(out.y, [2.0])


def test_hermite_backward_bracket() -> None:
    """Brackets with t2 < t1 (backward integration) interpolate correctly."""
    s1 = _cubic_step(2.0)
    s2 = _cubic_step(0.5)
    out = Step(t=np.nan, y=np.zeros(2), dy=np.zeros(2))

    hermite_interpolate(s1, s2, 1.25, out)
    np.testing.assert_allclose(out.y[0], _cubic(1.25), rtol=1e-12)


# -----------------------------------------------------------------------------
# 2) Bracket search
# -----------------------------------------------------------------------------


def test_next_interval_brackets_requested_time() -> None:
    """On CONT, step_prev.t <= ti <= t2 and the stepper was advanced minimally."""
    solver = Solver(make_unit_ode(), ScriptedStepper())
    state = solver.stepper.init(solver.ode)
    step_prev = Step.initial(solver.ode)

    assert next_interval(solver, state, step_prev, 2.5) is Status.CONT
    assert step_prev.t == 2.0
    assert state.step.t == 3.0
    assert state.accepts == 3

    # already bracketed: no further stepping
    assert next_interval(solver, state, step_prev, 2.75) is Status.CONT
    assert state.accepts == 3


def test_next_interval_returns_inner_finish() -> None:
    """A finished inner stepper ends the search with FINISH."""
    solver = Solver(make_unit_ode(), ScriptedStepper(tstop=1.0))
    state = solver.stepper.init(solver.ode)
    step_prev = Step.initial(solver.ode)

    assert next_interval(solver, state, step_prev, 5.0) is Status.FINISH


def test_next_interval_rejects_non_monotonic_steps() -> None:
    """A stepper that does not advance in time is a hard error."""
    solver = Solver(make_unit_ode(), ScriptedStepper(dt=0.0))
    state = solver.stepper.init(solver.ode)
    step_prev = Step.initial(solver.ode)

    with pytest.raises(NonMonotonicStepError, match="ScriptedStepper"):
        next_interval(solver, state, step_prev, 1.0)


# -----------------------------------------------------------------------------
# 3) Output semantics
# -----------------------------------------------------------------------------


def test_ramp_scenario_outputs_t_squared(ramp_ode: ExplicitODE) -> None:
    """y' = 2t, y(0) = 0 sampled at [0.5, 1, 1.5, 2] gives (t, t**2)."""
    out = collect(dense(ramp_ode, Heun, tout=[0.5, 1.0, 1.5, 2.0]))

    assert [t for t, _ in out] == [0.0, 0.5, 1.0, 1.5, 2.0]
    for t, y in out:
        np.testing.assert_allclose(y, [t * t], atol=1e-9)


def test_first_output_is_initial_condition(decay_ode: ExplicitODE) -> None:
    """The first value is (t0, y0) exactly; tout entries at t0 are not repeated."""
    cursor = dense(decay_ode, Heun, tout=[0.0, 1.0]).start()

    assert cursor.advance() is False
    t, y = cursor.current()
    assert t == 0.0
    assert y[0] == 1.0

    times = [t]
    while not cursor.advance():
        times.append(cursor.current()[0])
    assert times == [0.0, 1.0]
    assert cursor.status is Status.FINISH


def test_decay_interpolation_accuracy(decay_ode: ExplicitODE) -> None:
    """Dense values and derivatives of y' = -y match exp(-t)."""
    tout = np.linspace(0.1, 2.0, 20)
    cursor = dense(decay_ode, Heun, tout=tout, rtol=1e-8, atol=1e-10).start()
    cursor.advance()

    n = 0
    while not cursor.advance():
        t, y = cursor.current()
        np.testing.assert_allclose(y, [np.exp(-t)], rtol=1e-5)
        np.testing.assert_allclose(
            cursor.state.step_out.dy, [-np.exp(-t)], rtol=1e-3
        )
        assert t == tout[n]
        n += 1
    assert n == tout.size


def test_output_at_accepted_step_time_is_exact() -> None:
    """A requested time equal to an accepted step copies that step."""
    out = collect(dense(make_unit_ode(y0=0.25), ScriptedStepper, tout=[1.0, 2.0]))
    got = [(t, float(y[0])) for t, y in out]
    assert got == [(0.0, 0.25), (1.0, 1.25), (2.0, 2.25)]


def test_backward_integration() -> None:
    """Output times below t0 integrate backwards."""
    ode = ExplicitODE(t0=1.0, y0=np.array([1.0]), F=lambda _t, y: -y)
    dense_out = dense(ode, Heun, tout=[0.5, 0.0])
    out = collect(dense_out)

    assert dense_out.direction == -1.0
    assert [t for t, _ in out] == [1.0, 0.5, 0.0]
    for t, y in out:
        np.testing.assert_allclose(y, [np.exp(1.0 - t)], rtol=1e-5)


def test_abort_yields_only_bracketed_outputs() -> None:
    """An inner abort stops output before the first unreachable time."""
    stepper = ScriptedStepper(abort_after=3)
    dense_out = dense(make_unit_ode(), stepper, tout=[0.5, 1.5, 2.5, 3.5, 4.5])
    cursor = dense_out.start()

    produced: list[tuple[float, float]] = []
    with pytest.warns(IntegrationWarning) as record:
        while not cursor.advance():
            t, y = cursor.current()
            produced.append((t, float(y[0])))

    assert produced == [(0.0, 0.0), (0.5, 0.5), (1.5, 1.5), (2.5, 2.5)]
    assert cursor.status is Status.ABORT
    assert cursor.advance() is True

    messages = [str(w.message) for w in record]
    assert len(messages) == 2
    assert "scripted failure" in messages[0]
    assert "output time 3.5" in messages[1]
    assert "preceding warning" in messages[1]


def test_inner_finish_before_last_time_aborts() -> None:
    """An inner stream ending before a requested time is reported as abort."""
    ode = make_unit_ode()
    dense_out = DenseOutput(
        inner=Solver(ode, ScriptedStepper(tstop=2.0)),
        options=DenseOptions(tout=(0.5, 3.0, 4.0), tstop=4.0),
    )
    cursor = dense_out.start()

    times: list[float] = []
    with pytest.warns(IntegrationWarning, match="finished before reaching output"):
        while not cursor.advance():
            times.append(cursor.current()[0])

    assert times == [0.0, 0.5]
    assert cursor.status is Status.ABORT
    assert cursor.advance() is True


def test_dense_rejects_instance_stopping_short() -> None:
    """A stepper instance must reach the last requested output time."""
    with pytest.raises(ConfigurationError, match="does not reach"):
        dense(make_unit_ode(), ScriptedStepper(tstop=1.0), tout=[0.5, 2.0, 3.0])


def test_dense_rejects_backward_instance_stopping_short() -> None:
    """The reach check follows the direction of integration."""
    ode = make_unit_ode(t0=1.0)
    stepper = ScriptedStepper(tstop=0.5, dt=-0.5)
    with pytest.raises(ConfigurationError, match="does not reach"):
        dense(ode, stepper, tout=[0.5, 0.0])


def test_dense_accepts_instance_reaching_past_last_time() -> None:
    """An instance running past tout[-1] is fine; output stops at tout[-1]."""
    out = collect(dense(make_unit_ode(), ScriptedStepper(tstop=5.0), tout=[1.5]))
    assert [t for t, _ in out] == [0.0, 1.5]


def test_registered_interpolation_is_dispatched_on_state_type() -> None:
    """interpolate dispatches on the inner state type."""
    out = collect(dense(make_unit_ode(y0=3.0), _TaggedStepper, tout=[0.5, 1.5]))
    assert [float(y[0]) for _, y in out] == [3.0, -1.0, -1.0]


def test_dense_iteration_aliases_output_buffer() -> None:
    """Iterating reuses one output buffer; collect copies it."""
    dense_out = dense(make_unit_ode(), ScriptedStepper, tout=[1.0, 2.0])
    raw = list(dense_out)
    assert raw[0][1] is raw[-1][1]

    out = collect(dense_out)
    assert [float(y[0]) for _, y in out] == [0.0, 1.0, 2.0]


def test_dense_cursors_are_independent() -> None:
    """Two cursors over one DenseOutput do not share buffers."""
    dense_out = dense(make_unit_ode(), ScriptedStepper, tout=[1.0, 2.0])
    a = dense_out.start()
    b = dense_out.start()
    a.advance()
    a.advance()
    b.advance()

    assert a.current()[0] == 1.0
    assert b.current()[0] == 0.0
    assert a.state.inner_state is not b.state.inner_state


# -----------------------------------------------------------------------------
# 4) Construction
# -----------------------------------------------------------------------------


def test_dense_builds_inner_stepper_with_last_output_time(
    decay_ode: ExplicitODE,
) -> None:
    """The inner stepper stops at tout[-1]."""
    dense_out = dense(decay_ode, Heun, tout=[0.25, 0.75], rtol=1e-4)

    assert isinstance(dense_out, DenseOutput)
    assert dense_out.inner.stepper.tstop == 0.75
    assert dense_out.inner.stepper.options.adaptive_cfg.rtol == 1e-4
    assert dense_out.options.tout == (0.25, 0.75)
    assert dense_out.ode is decay_ode


def test_dense_with_tstop_only(decay_ode: ExplicitODE) -> None:
    """tout defaults to [tstop]."""
    out = collect(dense(decay_ode, Heun, tstop=1.0))
    assert [t for t, _ in out] == [0.0, 1.0]
    np.testing.assert_allclose(out[-1][1], [np.exp(-1.0)], rtol=1e-5)


def test_dense_instance_defaults_to_stepper_tstop() -> None:
    """A stepper instance provides the final time when none is given."""
    out = collect(dense(make_unit_ode(), ScriptedStepper(tstop=2.0)))
    assert [t for t, _ in out] == [0.0, 2.0]


def test_dense_requires_a_final_time(decay_ode: ExplicitODE) -> None:
    """A stepper class needs tout or tstop."""
    with pytest.raises(ConfigurationError, match="tout"):
        dense(decay_ode, Heun)


@pytest.mark.parametrize(
    ("tout", "tstop", "match"),
    [
        ([], None, "at least one"),
        ([0.5, np.nan], None, "finite"),
        ([0.5, 1.0], 2.0, "does not match"),
    ],
)
def test_dense_rejects_invalid_times(
    decay_ode: ExplicitODE,
    tout: list[float],
    tstop: float | None,
    match: str,
) -> None:
    """Empty, non-finite or inconsistent output times are rejected."""
    with pytest.raises(ConfigurationError, match=match):
        dense(decay_ode, Heun, tout=tout, tstop=tstop)
