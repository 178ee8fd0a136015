"""Idempotent "ensure desired state" engine.

Every provisioned resource goes through the same state machine::

    CHECK ──found──► ADOPTED (existing resource returned untouched)
      │
    absent
      ▼
    CREATE ──ok──► CREATED (after a short settle wait)
      │
    conflict (409 / "already exists")
      ▼
    CHECK once more ──found──► ADOPTED
      │
    absent ──► FAILED (PermanentError propagated)

Only the request shapes differ between resource kinds (see ``resources.py``).
Nothing is ever updated, deleted or rolled back here.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from .exceptions import MigrationError, PermanentError
from .models import EnsureOutcome, EnsureResult

if TYPE_CHECKING:
    from .api import DestinationApi
    from .history import HistoryEmitter
    from .models import ApiResponse, ResourceDescriptor, ResourceHandle
    from .protocols import ResourceKind

logger: logging.Logger = logging.getLogger(__name__)


class EnsureEngine:
    """Drives resource kinds through CHECK, then CREATE or ADOPT."""

    def __init__(
        self,
        api: DestinationApi,
        *,
        history: HistoryEmitter | None = None,
        settle_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api: DestinationApi = api
        self._history: HistoryEmitter | None = history
        self.settle_seconds: float = settle_seconds
        self._sleep: Callable[[float], None] = sleep
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self._locks_guard: threading.Lock = threading.Lock()

    @contextmanager
    def _key_lock(self, descriptor: ResourceDescriptor) -> Iterator[None]:
        # CHECK-then-CREATE must not interleave for the same natural key;
        # the entry is dropped again once no caller holds or waits for it
        key = (descriptor.resource_type, descriptor.natural_key)
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                self._lock_users[key] -= 1
                if not self._lock_users[key]:
                    del self._lock_users[key]
                    del self._locks[key]

    def _record(self, descriptor: ResourceDescriptor, outcome: EnsureOutcome, detail: str = "") -> None:
        if self._history is not None:
            self._history.emit(
                f"ensure:{descriptor.resource_type}",
                outcome.value,
                f"{descriptor.natural_key}{': ' + detail if detail else ''}",
            )

    def _adopt(self, kind: ResourceKind, descriptor: ResourceDescriptor, response: ApiResponse | None) -> ResourceHandle:
        handle = kind.handle_from(response, descriptor, existed_before=True)
        logger.info(f"Adopted existing {descriptor.resource_type} '{descriptor.natural_key}' (id {handle.id})")
        self._record(descriptor, EnsureOutcome.ADOPTED, f"id {handle.id}")
        return handle

    def ensure(self, kind: ResourceKind, descriptor: ResourceDescriptor) -> ResourceHandle:
        """Make sure the described resource exists and return its handle.

        Raises:
            PermanentError: If the create call fails and the resource is still absent.
            MigrationError: For any other failure (credentials, parsing, validation).
        """
        with self._key_lock(descriptor):
            lookup = kind.check(self._api, descriptor)
            if lookup.found:
                return self._adopt(kind, descriptor, lookup.response)

            logger.debug(f"{descriptor.resource_type} '{descriptor.natural_key}' absent, creating")
            try:
                response = kind.create(self._api, descriptor)
            except PermanentError as e:
                if not kind.is_conflict(e):
                    raise
                logger.info(
                    f"Create of {descriptor.resource_type} '{descriptor.natural_key}' conflicted "
                    f"(status {e.status}); checking again"
                )
                lookup = kind.check(self._api, descriptor)
                if lookup.found:
                    return self._adopt(kind, descriptor, lookup.response)
                raise

            if self.settle_seconds > 0:
                # Give the server time to make the new resource visible to dependent calls
                self._sleep(self.settle_seconds)

            handle = kind.handle_from_create(response, descriptor)
            if handle is None:
                lookup = kind.check(self._api, descriptor)
                if not lookup.found:
                    msg = f"{descriptor.resource_type} '{descriptor.natural_key}' was created but cannot be found"
                    raise PermanentError(
                        msg, target=self._api.target, path=descriptor.natural_key, status=response.status_code
                    )
                handle = kind.handle_from(lookup.response, descriptor, existed_before=False)

            logger.info(f"Created {descriptor.resource_type} '{descriptor.natural_key}' (id {handle.id})")
            self._record(descriptor, EnsureOutcome.CREATED, f"id {handle.id}")
            return handle

    def try_ensure(self, kind: ResourceKind, descriptor: ResourceDescriptor) -> EnsureResult:
        """Like ensure(), but report failures as a FAILED result instead of raising."""
        try:
            handle = self.ensure(kind, descriptor)
        except MigrationError as e:
            logger.error(f"Failed to ensure {descriptor.resource_type} '{descriptor.natural_key}': {e}")
            self._record(descriptor, EnsureOutcome.FAILED, str(e))
            return EnsureResult(descriptor=descriptor, outcome=EnsureOutcome.FAILED, error=e)

        outcome = EnsureOutcome.ADOPTED if handle.existed_before else EnsureOutcome.CREATED
        return EnsureResult(descriptor=descriptor, outcome=outcome, handle=handle)
