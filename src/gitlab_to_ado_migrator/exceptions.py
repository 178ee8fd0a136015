"""
Custom exception classes for the GitLab to Azure DevOps migration tool.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import TargetSystem


class MigrationError(Exception):
    """Base exception for migration errors."""


class ConfigurationError(MigrationError):
    """Raised when the layered configuration is invalid."""


class MissingCredentialError(MigrationError):
    """Raised when no credential source produced a value."""

    def __init__(self, name: str, sources: list[str]) -> None:
        self.name: str = name
        self.sources: list[str] = sources
        tried = ", ".join(sources) if sources else "none"
        super().__init__(f"No value found for credential '{name}' (tried: {tried})")


class _RequestError(MigrationError):
    """Error tied to one request against one system."""

    def __init__(self, message: str, *, target: TargetSystem, path: str, status: int) -> None:
        self.message: str = message
        self.target: TargetSystem = target
        self.path: str = path
        self.status: int = status
        super().__init__(f"[{target.value} {path}] status={status}: {message}")


class TransportError(_RequestError):
    """Raised when a request could not be delivered by any transport.

    ``status`` is 0 when no HTTP status could be obtained. ``fallback_eligible``
    marks primary-transport failures that the secondary transport may recover.
    ``transient`` is False for failures that no retry can fix (e.g. a malformed URL).
    """

    def __init__(
        self,
        message: str,
        *,
        target: TargetSystem,
        path: str,
        status: int = 0,
        fallback_eligible: bool = False,
        transient: bool = True,
    ) -> None:
        super().__init__(message, target=target, path=path, status=status)
        self.fallback_eligible: bool = fallback_eligible
        self.transient: bool = transient


class PermanentError(_RequestError):
    """Raised for a non-retryable status or once retries are exhausted."""

    def __init__(
        self,
        message: str,
        *,
        target: TargetSystem,
        path: str,
        status: int,
        attempts: int = 1,
    ) -> None:
        super().__init__(message, target=target, path=path, status=status)
        self.attempts: int = attempts


class FacadeError(_RequestError):
    """Raised when a response body cannot be parsed into the expected shape."""


class FieldValueError(MigrationError):
    """Raised when a work item field value is outside the field's allowed values."""

    def __init__(self, field_name: str, value: str, allowed: frozenset[str]) -> None:
        self.field_name: str = field_name
        self.value: str = value
        self.allowed: frozenset[str] = allowed
        preview = ", ".join(sorted(allowed)[:10])
        super().__init__(f"Value '{value}' is not allowed for field '{field_name}' (allowed: {preview})")
