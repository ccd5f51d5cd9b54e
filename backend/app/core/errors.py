"""Application-level exception types.

Expected outcomes of admission control (window or quota denials, inactive
keys) are returned as decisions, not raised. Only infrastructure failures
travel as exceptions.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class AppError(Exception):
    """Base error for application failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured context for logs.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)


class StorageUnavailableError(AppError):
    """Raised when the event store or key registry cannot be reached."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(code="storage_unavailable", message=message, details=details)


__all__ = ["AppError", "StorageUnavailableError"]
