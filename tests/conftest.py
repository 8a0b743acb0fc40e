"""Global pytest configuration and shared fixtures for ivp_engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import pytest

from ivp_engine.problem import ExplicitODE

if TYPE_CHECKING:
    from numpy.typing import NDArray

    FloatArray = NDArray[np.floating]


# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "slow: convergence studies that take many steps",
    )


# -----------------------------------------------------------------------------
# Shared problems
# -----------------------------------------------------------------------------


def _rhs_decay(_t: float, y: FloatArray) -> FloatArray:
    return -y


def _rhs_ramp(t: float, y: FloatArray) -> FloatArray:
    return np.full_like(y, 2.0 * t)


@pytest.fixture
def decay_ode() -> ExplicitODE:
    """y' = -y, y(0) = 1 (exact solution exp(-t))."""
    return ExplicitODE(t0=0.0, y0=np.array([1.0]), F=_rhs_decay)


@pytest.fixture
def ramp_ode() -> ExplicitODE:
    """y' = 2t, y(0) = 0 (exact solution t**2)."""
    return ExplicitODE(t0=0.0, y0=np.array([0.0]), F=_rhs_ramp)
