from __future__ import annotations

from typing import Any


class IdentityError(Exception):
    """Base error for the identity core."""

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ConfigError(IdentityError):
    """Missing or invalid runtime configuration."""


class InvalidInputError(IdentityError):
    """Client input failed validation or policy checks."""


class UnauthorizedError(IdentityError):
    """Authentication failed; `reason` is for audit only and never sent to clients."""

    def __init__(
        self,
        message: str = "Unauthorized",
        *,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.reason = reason


class ForbiddenError(IdentityError):
    """Authenticated caller is not allowed to perform the action."""


class NotFoundError(IdentityError):
    """Requested entity does not exist in the caller's tenant."""


class ConflictError(IdentityError):
    """Unique constraint violation on create or update."""


class RateLimitedError(IdentityError):
    """Caller exceeded the effective rate limit."""


class DependencyUnavailableError(IdentityError):
    """A backing store or upstream could not be reached."""
