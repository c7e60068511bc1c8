"""Shared error taxonomy for controllers, backends and teardown."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ciliumctl.shared.models import ConvergenceOutcome, FeatureIdentity


class FeatureError(RuntimeError):
    """Base class for every error raised by the reconciliation core."""


class NotFoundError(FeatureError):
    """Raised when the backend reports the feature or resource absent."""


class TransientError(FeatureError):
    """Raised for network hiccups and other conditions worth polling through."""


class FatalError(FeatureError):
    """Raised when the backend rejects a request outright."""


class ConfigurationError(FatalError):
    """Raised when the desired state itself is malformed."""


class UnconfirmedApplyError(FeatureError):
    """The apply went through but convergence was not confirmed.

    Nothing is rolled back: the backend keeps whatever was applied. Callers
    decide whether to re-poll, retry, or surface the failure.
    """

    def __init__(self, identity: "FeatureIdentity", outcome: "ConvergenceOutcome") -> None:
        self.identity = identity
        self.outcome = outcome
        super().__init__(self._describe())

    def _describe(self) -> str:
        return f"{self.identity}: applied, convergence not confirmed"


class ConvergenceTimeoutError(UnconfirmedApplyError):
    """The wait deadline elapsed without a healthy or fatal result."""

    def _describe(self) -> str:
        detail = f" (last error: {self.outcome.last_error})" if self.outcome.last_error else ""
        return (
            f"{self.identity}: applied, not healthy after "
            f"{self.outcome.elapsed:.1f}s{detail}"
        )


class ConvergenceFailedError(UnconfirmedApplyError, FatalError):
    """The status check returned a fatal error while waiting."""

    def _describe(self) -> str:
        return f"{self.identity}: applied, status check failed: {self.outcome.last_error}"


class TeardownError(FeatureError):
    """A teardown step failed; the remaining steps were not attempted."""

    def __init__(self, step: str, index: int, message: str) -> None:
        self.step = step
        self.index = index
        super().__init__(f"teardown step {index + 1} ({step}) failed: {message}")


class TeardownTimeoutError(TeardownError):
    """The plan deadline elapsed while a step's precondition was still pending."""


class PlanOrderError(ValueError):
    """Raised when a teardown plan removes a dependency before its dependent."""

    def __init__(self, message: str, dependent: Optional[str] = None) -> None:
        self.dependent = dependent
        super().__init__(message)
