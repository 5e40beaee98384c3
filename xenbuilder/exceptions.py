"""Custom exceptions for xenbuilder."""

from __future__ import annotations

from typing import Iterable, List


class BuildError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ValidationError(BuildError):
    """One or more configuration defects, collected before reporting."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: List[str] = list(errors)
        count = len(self.errors)
        lines = "\n".join(f"* {error}" for error in self.errors)
        super().__init__(f"{count} error(s) occurred:\n\n{lines}")


class AuthenticationError(BuildError):
    """Raised when the control-plane login is rejected or unreachable."""


class StepError(BuildError):
    """Raised (or stored in the build state) by a failing step."""


class CancellationError(BuildError):
    """The build was stopped by an external cancellation request."""


class ArtifactError(BuildError):
    """Raised when the output directory cannot be turned into an artifact."""
