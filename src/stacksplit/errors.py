"""Error taxonomy shared by every pipeline stage."""

from __future__ import annotations

from typing import Sequence


class StackError(RuntimeError):
    """Base class for failures surfaced to the operator.

    Besides the message each error can name the partition that failed, the
    checks involved, and the manual action that remains for the operator.
    """

    def __init__(
        self,
        message: str,
        *,
        partition: str | None = None,
        checks: Sequence[str] = (),
        action: str | None = None,
    ) -> None:
        super().__init__(message)
        self.partition = partition
        self.checks = tuple(checks)
        self.action = action

    def describe(self) -> str:
        """Return a multi-line description suitable for CLI output."""
        lines = [str(self)]
        if self.partition:
            lines.append(f"Partition: {self.partition}")
        if self.checks:
            lines.append(f"Checks: {', '.join(self.checks)}")
        if self.action:
            lines.append(f"Next step: {self.action}")
        return "\n".join(lines)


class ConfigError(StackError):
    """Malformed plan, coverage mismatch, missing changeset or bad configuration."""


class ValidationFailure(StackError):
    """A partition failed validation and the one-shot auto-fix did not recover it."""


class PropagationConflict(StackError):
    """Forward propagation of a remote fix hit a merge conflict or failed validation."""


class RollbackError(StackError):
    """One or more rollback steps failed; cleanup continued best-effort."""

    def __init__(self, message: str, failures: Sequence[str] = (), **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.failures = tuple(failures)

    def describe(self) -> str:
        lines = [super().describe()]
        for failure in self.failures:
            lines.append(f"- {failure}")
        return "\n".join(lines)


__all__ = [
    "ConfigError",
    "PropagationConflict",
    "RollbackError",
    "StackError",
    "ValidationFailure",
]
