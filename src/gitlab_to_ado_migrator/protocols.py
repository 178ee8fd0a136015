"""Protocols defining the seams of the provisioning core.

The core separates concerns into layers that only meet at these contracts:

1. Transport: delivers one ``RequestSpec`` and returns a ``TransportResult``.
   The in-process ``requests`` transport and the ``curl`` subprocess transport
   both implement it, so retry and classification never care which one ran.
2. ResourceKind: knows the CHECK and CREATE request shapes of one resource
   type on the destination system. The ensure engine drives every kind
   through the same state machine.

This separation allows:
- Adding new resource kinds without touching the engine
- Testing the retry and ensure logic with fake transports and kinds
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .api import DestinationApi
    from .exceptions import PermanentError
    from .models import ApiResponse, Lookup, RequestSpec, ResourceDescriptor, ResourceHandle, TransportResult


class Transport(Protocol):
    """Protocol for delivering a single HTTP request.

    Implementations must never let a raw ``requests`` or ``OSError`` exception
    escape: every delivery failure is raised as ``TransportError`` with the
    target system, path and a status (0 when none could be obtained).
    """

    def send(self, spec: RequestSpec) -> TransportResult:
        """Send the request once and return whatever status the server gave."""
        ...


class ResourceKind(Protocol):
    """Protocol for one provisionable resource type.

    The ensure engine calls, in order:
    1. check() - read-only existence probe by natural key
    2. create() - only when check() reported the resource absent
    3. is_conflict() - when create() failed, to decide whether to re-check
    4. handle_from_create() - to turn the create response into a handle;
       returning None makes the engine re-run check() after the settle wait
    """

    resource_type: str

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        """Probe for the resource; a missing resource is ``Lookup.absent()``, not an error."""
        ...

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        """Issue the create call for the desired state."""
        ...

    def is_conflict(self, error: PermanentError) -> bool:
        """Whether a create failure means the resource now exists."""
        ...

    def handle_from(self, response: ApiResponse, descriptor: ResourceDescriptor, *, existed_before: bool) -> ResourceHandle:
        """Build a handle from a found or created resource."""
        ...

    def handle_from_create(self, response: ApiResponse, descriptor: ResourceDescriptor) -> ResourceHandle | None:
        """Build a handle from the create response, or None if it carries no identity."""
        ...
