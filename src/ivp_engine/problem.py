# src/ivp_engine/problem.py
"""Initial value problem definitions.

Two problem variants are provided, both immutable after construction:

- :class:`ExplicitODE` for ``dy/dt = F(t, y)`` with ``y(t0) = y0``.
- :class:`ImplicitODE` for ``G(t, y, dy) = 0`` with ``y(t0) = y0`` and
  optionally ``dy(t0) = dy0``.

Exactly one of ``F``/``G`` is active per variant. Each carries a Jacobian
``J``; when none is given a forward finite-difference approximation is built
from the active function. Steppers only ever read these objects.

State vectors are 1D float arrays. ``y0`` and ``dy0`` are private copies so
later mutation of the caller's arrays cannot leak into a running integration.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, Final, Literal, TypeAlias

import numpy as np
import numpy.typing as npt
from scipy.sparse import spmatrix

from .errors import ProblemDefinitionError

# Error / message constants -------------------------------------------------

_Y0_NDIM_ERROR: Final[str] = "y0 must be a 1D array, got shape {shape}"
_Y0_EMPTY_ERROR: Final[str] = "y0 must contain at least one component"
_T0_FINITE_ERROR: Final[str] = "t0 must be finite, got {t0}"
_DY0_SHAPE_ERROR: Final[str] = "dy0 shape {actual} does not match y0 shape {expected}"
_F_SHAPE_ERROR: Final[str] = "F(t0, y0) has shape {actual}; expected {expected}"
_G_SHAPE_ERROR: Final[str] = "G(t0, y0, dy0) has shape {actual}; expected {expected}"

# Relative perturbation for forward differences (~ sqrt of float64 eps).
_FD_EPS: Final[float] = 1.4901161193847656e-08

# Typing helpers ------------------------------------------------------------

FloatArray: TypeAlias = npt.NDArray[np.floating[Any]]
JacobianMatrix: TypeAlias = FloatArray | spmatrix
ProblemKind: TypeAlias = Literal["explicit", "implicit"]

RHSFunction = Callable[[float, FloatArray], FloatArray]
ResidualFunction = Callable[[float, FloatArray, FloatArray], FloatArray]
ExplicitJacobian = Callable[[float, FloatArray], JacobianMatrix]
ImplicitJacobian = Callable[[float, FloatArray, FloatArray, float], JacobianMatrix]


def _as_state(y0: npt.ArrayLike) -> FloatArray:
    arr = np.array(y0, dtype=np.float64, copy=True)
    if arr.ndim != 1:
        raise ProblemDefinitionError(_Y0_NDIM_ERROR.format(shape=arr.shape))
    if arr.size == 0:
        raise ProblemDefinitionError(_Y0_EMPTY_ERROR)
    return arr


def _as_time(t0: float) -> float:
    t = float(t0)
    if not np.isfinite(t):
        raise ProblemDefinitionError(_T0_FINITE_ERROR.format(t0=t0))
    return t


def forward_jacobian(F: RHSFunction) -> ExplicitJacobian:  # noqa: N803
    """Build a forward finite-difference Jacobian ``dF/dy`` for an explicit RHS.

    Args:
        F: Right-hand side ``F(t, y)``.

    Returns:
        Callable ``J(t, y)`` returning a dense ``(n, n)`` array.
    """

    def jacobian(t: float, y: FloatArray) -> FloatArray:
        y_arr = np.asarray(y, dtype=np.float64)
        f0 = np.asarray(F(t, y_arr), dtype=np.float64)
        out = np.empty((f0.size, y_arr.size), dtype=np.float64)
        y_pert = y_arr.copy()
        for j in range(y_arr.size):
            h = _FD_EPS * max(1.0, abs(float(y_arr[j])))
            y_pert[j] = y_arr[j] + h
            out[:, j] = (np.asarray(F(t, y_pert), dtype=np.float64) - f0) / h
            y_pert[j] = y_arr[j]
        return out

    return jacobian


def forward_jacobian_implicit(G: ResidualFunction) -> ImplicitJacobian:  # noqa: N803
    """Build a finite-difference ``dG/dy + a * dG/d(dy)`` for an implicit residual.

    Args:
        G: Residual ``G(t, y, dy)``.

    Returns:
        Callable ``J(t, y, dy, a)`` returning a dense ``(n, n)`` array.
    """

    def jacobian(t: float, y: FloatArray, dy: FloatArray, a: float) -> FloatArray:
        y_arr = np.asarray(y, dtype=np.float64)
        dy_arr = np.asarray(dy, dtype=np.float64)
        g0 = np.asarray(G(t, y_arr, dy_arr), dtype=np.float64)
        out = np.zeros((g0.size, y_arr.size), dtype=np.float64)
        y_pert = y_arr.copy()
        dy_pert = dy_arr.copy()
        for j in range(y_arr.size):
            h = _FD_EPS * max(1.0, abs(float(y_arr[j])))
            y_pert[j] = y_arr[j] + h
            out[:, j] = (np.asarray(G(t, y_pert, dy_arr), dtype=np.float64) - g0) / h
            y_pert[j] = y_arr[j]

            hd = _FD_EPS * max(1.0, abs(float(dy_arr[j])))
            dy_pert[j] = dy_arr[j] + hd
            col = (np.asarray(G(t, y_arr, dy_pert), dtype=np.float64) - g0) / hd
            out[:, j] += a * col
            dy_pert[j] = dy_arr[j]
        return out

    return jacobian


@dataclass(slots=True, frozen=True)
class ExplicitODE:
    """Explicit ODE ``dy/dt = F(t, y)`` with ``y(t0) = y0``.

    Attributes:
        t0: Initial time.
        y0: Initial state (1D, copied on construction).
        F: Right-hand side ``F(t, y) -> dy/dt``.
        J: Optional Jacobian ``J(t, y) -> dF/dy``. Defaults to forward
            finite differences of ``F``.
        dy0: Derivative at the initial condition, ``F(t0, y0)``.
    """

    kind: ClassVar[ProblemKind] = "explicit"

    t0: float
    y0: FloatArray
    F: RHSFunction
    J: ExplicitJacobian | None = None
    dy0: FloatArray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Normalize the initial data and evaluate ``dy0``.

        Raises:
            ProblemDefinitionError: If y0 is malformed or F returns a bad shape.
        """
        y0 = _as_state(self.y0)
        t0 = _as_time(self.t0)
        dy0 = np.asarray(self.F(t0, y0.copy()), dtype=np.float64)
        if dy0.shape != y0.shape:
            raise ProblemDefinitionError(
                _F_SHAPE_ERROR.format(actual=dy0.shape, expected=y0.shape)
            )

        object.__setattr__(self, "t0", t0)
        object.__setattr__(self, "y0", y0)
        object.__setattr__(self, "dy0", np.array(dy0, copy=True))
        if self.J is None:
            object.__setattr__(self, "J", forward_jacobian(self.F))

    @property
    def G(self) -> None:  # noqa: N802
        """Explicit problems have no residual function."""
        return

    @property
    def n_states(self) -> int:
        """Number of state components."""
        return int(self.y0.size)


@dataclass(slots=True, frozen=True)
class ImplicitODE:
    """Implicit ODE ``G(t, y, dy) = 0`` with ``y(t0) = y0``.

    Attributes:
        t0: Initial time.
        y0: Initial state (1D, copied on construction).
        G: Residual ``G(t, y, dy) -> res``.
        J: Optional Jacobian ``J(t, y, dy, a) -> dG/dy + a * dG/d(dy)``.
            Defaults to forward finite differences of ``G``.
        dy0: Optional consistent initial derivative (defaults to zeros).
    """

    kind: ClassVar[ProblemKind] = "implicit"

    t0: float
    y0: FloatArray
    G: ResidualFunction
    J: ImplicitJacobian | None = None
    dy0: FloatArray | None = None

    def __post_init__(self) -> None:
        """Normalize the initial data and check the residual shape.

        Raises:
            ProblemDefinitionError: If y0/dy0 are malformed or G returns a bad shape.
        """
        y0 = _as_state(self.y0)
        t0 = _as_time(self.t0)
        if self.dy0 is None:
            dy0 = np.zeros_like(y0)
        else:
            dy0 = np.array(self.dy0, dtype=np.float64, copy=True)
            if dy0.shape != y0.shape:
                raise ProblemDefinitionError(
                    _DY0_SHAPE_ERROR.format(actual=dy0.shape, expected=y0.shape)
                )

        res = np.asarray(self.G(t0, y0.copy(), dy0.copy()), dtype=np.float64)
        if res.shape != y0.shape:
            raise ProblemDefinitionError(
                _G_SHAPE_ERROR.format(actual=res.shape, expected=y0.shape)
            )

        object.__setattr__(self, "t0", t0)
        object.__setattr__(self, "y0", y0)
        object.__setattr__(self, "dy0", dy0)
        if self.J is None:
            object.__setattr__(self, "J", forward_jacobian_implicit(self.G))

    @property
    def F(self) -> None:  # noqa: N802
        """Implicit problems have no explicit right-hand side."""
        return

    @property
    def n_states(self) -> int:
        """Number of state components."""
        return int(self.y0.size)


IVP: TypeAlias = ExplicitODE | ImplicitODE
