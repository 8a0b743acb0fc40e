# src/ivp_engine/errors.py
"""Error types, diagnostics and standardized raise helpers for ivp_engine.

This module centralizes:
- explicit error classes with actionable messages,
- the warning category used to report aborted integrations, and
- small helpers that build consistent messages for construction-time
  rejections.

Design intent:
- problem/stepper combinations that cannot work fail fast at construction
- failures *during* integration are not exceptions: they travel as
  ``Status.ABORT`` and are reported through ``IntegrationWarning``
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Iterable

_PAIRING_MSG: Final[str] = (
    "The stepper {stepper} doesn't support {kind} problems ({problem}). "
    "Supported problem kinds: {supported}."
)
_CONTRACT_MSG: Final[str] = (
    "Function `{function}` {detail} needs to be implemented for stepper {stepper}"
)


class IVPEngineError(Exception):
    """Base exception for ivp_engine errors."""


class UnsupportedPairingError(IVPEngineError, TypeError):
    """Raised when a stepper cannot integrate the given kind of problem."""


class StepperContractError(IVPEngineError, NotImplementedError):
    """Raised when a stepper does not provide the functions its capability needs."""


class ConfigurationError(IVPEngineError, ValueError):
    """Raised when solver or dense-output options are invalid or incomplete."""


class ProblemDefinitionError(IVPEngineError, ValueError):
    """Raised when an initial value problem is malformed."""


class NonMonotonicStepError(IVPEngineError, RuntimeError):
    """Raised when a stepper emits a step that does not advance in time."""


class IntegrationWarning(RuntimeWarning):
    """Emitted when an integration is aborted before reaching its end."""


def raise_unsupported_pairing(
    *,
    problem: object,
    stepper: object,
    kind: str,
    supported: Iterable[str],
) -> None:
    """Raise a standardized UnsupportedPairingError.

    Args:
        problem: The rejected problem (its type name is reported).
        stepper: The rejected stepper class or instance.
        kind: Problem kind tag (for example, "implicit").
        supported: Problem kinds the stepper accepts.

    Raises:
        UnsupportedPairingError: Always.
    """
    stepper_cls = stepper if isinstance(stepper, type) else type(stepper)
    msg = _PAIRING_MSG.format(
        stepper=stepper_cls.__name__,
        kind=kind,
        problem=type(problem).__name__,
        supported=sorted(supported),
    )
    raise UnsupportedPairingError(msg)


def raise_contract_error(stepper: object, function: str, *, fused: bool) -> None:
    """Raise a standardized StepperContractError.

    Args:
        stepper: Stepper instance that is missing a function.
        function: Name of the missing function.
        fused: Whether the stepper declared the fused ``onestep`` capability.

    Raises:
        StepperContractError: Always.
    """
    detail = (
        "(declared by Capability.FUSED)"
        if fused
        else "and companions (or alternatively `onestep`)"
    )
    msg = _CONTRACT_MSG.format(
        function=function,
        detail=detail,
        stepper=type(stepper).__name__,
    )
    raise StepperContractError(msg)


def raise_invalid_options(
    *,
    unknown: Iterable[str] | None = None,
    detail: str | None = None,
) -> None:
    """Raise a standardized ConfigurationError.

    Args:
        unknown: Option names that are not recognized.
        detail: Optional additional context.

    Raises:
        ConfigurationError: Always.
    """
    parts: list[str] = ["Invalid ivp_engine options."]
    if unknown:
        parts.append(f"Unknown option(s): {sorted(set(unknown))}.")
    if detail:
        parts.append(f"Detail: {detail}")
    raise ConfigurationError(" ".join(parts))
