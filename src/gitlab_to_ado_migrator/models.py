"""Data models shared by the transport, facades and ensure engine.

Request and result types are frozen: a ``RequestSpec`` is built once per call
and may be re-sent unchanged by the retry loop or the fallback transport.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final

RETRYABLE_STATUSES: Final[frozenset[int]] = frozenset({0, 429, 502, 503, 504})


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


class TargetSystem(Enum):
    """The two systems the core talks to."""

    SOURCE = "source"
    DESTINATION = "destination"


class TransportKind(Enum):
    """Which transport produced a result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


class EnsureOutcome(Enum):
    """Terminal states of one ensure invocation."""

    ADOPTED = "adopted"
    CREATED = "created"
    FAILED = "failed"


@dataclass(frozen=True)
class RequestSpec:
    """One logical HTTP request.

    ``path`` is relative to ``base_url``. ``credential`` is only read by the
    fallback transport, which authenticates differently from the primary one.
    """

    method: str
    path: str
    base_url: str
    target: TargetSystem
    body: bytes | None = None
    content_type: str | None = None
    api_version: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, str] = field(default_factory=dict)
    credential: str | None = field(default=None, repr=False)
    existence_probe: bool = False

    @property
    def url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.path.lstrip('/')}"

    @property
    def is_read(self) -> bool:
        return self.method.upper() == "GET"


@dataclass(frozen=True)
class TransportResult:
    """Outcome of one transport attempt."""

    status_code: int
    headers: Mapping[str, str]
    body: bytes
    elapsed_ms: float
    transport_used: TransportKind

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def header(self, name: str) -> str | None:
        return header_value(self.headers, name)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry configuration shared read-only by all calls."""

    max_attempts: int
    backoff_schedule: tuple[float, ...]
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {self.max_attempts}"
            raise ValueError(msg)
        if any(b < 0 for b in self.backoff_schedule):
            msg = f"Backoff intervals must be non-negative: {self.backoff_schedule}"
            raise ValueError(msg)
        if list(self.backoff_schedule) != sorted(self.backoff_schedule):
            msg = f"Backoff schedule must be non-decreasing: {self.backoff_schedule}"
            raise ValueError(msg)

    def is_retryable(self, status: int) -> bool:
        return status in self.retryable_statuses

    def delay_for(self, attempt: int) -> float:
        """Wait before the attempt following ``attempt`` (1-based); the last entry repeats."""
        if not self.backoff_schedule:
            return 0.0
        index = min(max(attempt, 1), len(self.backoff_schedule)) - 1
        return self.backoff_schedule[index]


PROVISIONING_POLICY: Final[RetryPolicy] = RetryPolicy(max_attempts=6, backoff_schedule=(2, 4, 8, 16, 32))
READ_POLICY: Final[RetryPolicy] = RetryPolicy(max_attempts=4, backoff_schedule=(1, 2, 4))


@dataclass(frozen=True)
class ApiResponse:
    """Canonical parsed response returned by both facades."""

    status_code: int
    data: Any
    headers: Mapping[str, str] = field(default_factory=dict)
    transport_used: TransportKind = TransportKind.PRIMARY

    def items(self) -> list[Any]:
        """Return the payload as a list.

        Azure DevOps wraps collections as ``{"count": n, "value": [...]}``, GitLab
        returns bare arrays, and single resources come back as one object.
        """
        if self.data is None:
            return []
        if isinstance(self.data, list):
            return self.data
        if isinstance(self.data, dict) and isinstance(self.data.get("value"), list):
            return self.data["value"]
        return [self.data]

    def get(self, key: str, default: Any = None) -> Any:
        if isinstance(self.data, dict):
            return self.data.get(key, default)
        return default

    def header(self, name: str) -> str | None:
        return header_value(self.headers, name)


@dataclass(frozen=True)
class Lookup:
    """Result of an existence probe: found (with the response) or absent."""

    found: bool
    response: ApiResponse | None = None

    @classmethod
    def absent(cls) -> Lookup:
        return cls(found=False)

    @classmethod
    def of(cls, response: ApiResponse) -> Lookup:
        return cls(found=True, response=response)


@dataclass
class CredentialContext:
    """Ordered (source, value) pairs considered for one credential name."""

    name: str
    candidates: list[tuple[str, str | None]] = field(default_factory=list)

    def winner(self) -> tuple[str, str] | None:
        for source, value in self.candidates:
            if value:
                return source, value
        return None


@dataclass(frozen=True)
class FieldSchemaEntry:
    """Allowed-value domain of one field, fetched once per session."""

    field_name: str
    allowed_values: frozenset[str]
    fetched_at: dt.datetime


@dataclass(frozen=True)
class ResourceHandle:
    """Identity of a provisioned resource, usable as a parent for dependent resources."""

    id: str
    natural_key: str
    existed_before: bool
    resource_type: str = ""
    data: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class ResourceDescriptor:
    """What should exist: a resource type, its natural key and the desired state."""

    resource_type: str
    natural_key: str
    desired_state: Mapping[str, Any] = field(default_factory=dict)
    parent: ResourceHandle | None = None


@dataclass(frozen=True)
class EnsureResult:
    """Outcome of an ensure invocation that never raises."""

    descriptor: ResourceDescriptor
    outcome: EnsureOutcome
    handle: ResourceHandle | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not EnsureOutcome.FAILED


@dataclass(frozen=True)
class MigrationHistoryRecord:
    """Append-only history entry; storage belongs to the caller's sink."""

    timestamp: dt.datetime
    operation_type: str
    status: str
    detail: str
