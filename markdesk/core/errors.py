"""Shared error types.

The goal is to make errors explicit and easy to handle at the command boundary.
Only stage failures are allowed to change a job's status; everything else is
either logged and swallowed at its layer or returned as a command failure.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(eq=False)
class AppError(Exception):
    """Base error for engine-level failures."""

    message: str
    cause: Exception | None = None

    def __str__(self) -> str:  # pragma: no cover
        if self.cause is None:
            return self.message
        return f"{self.message} (cause: {self.cause})"


class ValidationError(AppError):
    """Malformed snapshot, activity entry or settings value."""


class StageExecutionError(AppError):
    """A stage executor raised or reported an incomplete result."""


class ChannelDeliveryError(AppError):
    """A message could not be delivered to a channel."""


class MigrationError(AppError):
    """Legacy data could not be migrated."""


class CommandError(AppError):
    """Unknown command, or a command that is invalid for the current state."""


class InfrastructureError(AppError):
    """Durable store / filesystem failures."""


class CancelledError(AppError):
    """Cooperative cancellation observed by a stage executor."""
