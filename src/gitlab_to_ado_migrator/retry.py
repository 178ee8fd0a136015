"""Bounded retries with backoff around a transport.

Classification:

- 2xx/3xx: success, returned at once
- 404 on a GET existence probe: a valid "absent" answer, returned at once
- status in the policy's retryable set (default 0, 429, 502, 503, 504): retried
  after the policy's backoff interval; status 0 (no response at all) is
  treated like 503
- anything else: ``PermanentError`` at once, no retry
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Final

from .exceptions import PermanentError, TransportError

if TYPE_CHECKING:
    from .models import RequestSpec, RetryPolicy, TransportResult
    from .protocols import Transport

logger: logging.Logger = logging.getLogger(__name__)

# Status used for backoff purposes when no HTTP status was received
NO_RESPONSE_BUCKET: Final[int] = 503

_MAX_MESSAGE_CHARS: Final[int] = 500


def backoff_bucket(status: int) -> int:
    """Status used to pick the backoff treatment; a missing response counts as 503."""
    return NO_RESPONSE_BUCKET if status == 0 else status


def is_absent_probe(spec: RequestSpec, status: int) -> bool:
    """A 404 answering a GET existence probe means "not found", not an error."""
    return status == 404 and spec.is_read and spec.existence_probe


def _error_message(result: TransportResult) -> str:
    text = result.text.strip()
    if len(text) > _MAX_MESSAGE_CHARS:
        text = text[:_MAX_MESSAGE_CHARS] + "..."
    return text or f"HTTP {result.status_code}"


class RetryController:
    """Sends requests through a transport, retrying transient failures."""

    def __init__(self, transport: Transport, *, sleep: Callable[[float], None] = time.sleep) -> None:
        self.transport: Transport = transport
        self._sleep: Callable[[float], None] = sleep

    def send(self, spec: RequestSpec, policy: RetryPolicy) -> TransportResult:
        """Send ``spec``, returning a successful (or absent-probe) result.

        Raises:
            PermanentError: On a non-retryable status, a non-transient transport
                failure, or when ``policy.max_attempts`` is exhausted.
        """
        status = 0
        message = ""
        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = self.transport.send(spec)
            except TransportError as e:
                status, message = e.status, e.message
                if not e.transient:
                    raise PermanentError(
                        message, target=spec.target, path=spec.path, status=status, attempts=attempt
                    ) from e
            else:
                status = result.status_code
                if result.ok or is_absent_probe(spec, status):
                    if attempt > 1:
                        logger.info(f"{spec.method} {spec.path} succeeded on attempt {attempt}")
                    return result
                message = _error_message(result)

            if not policy.is_retryable(status):
                raise PermanentError(message, target=spec.target, path=spec.path, status=status, attempts=attempt)

            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{spec.method} {spec.path} failed with status {status} "
                    f"(treated as {backoff_bucket(status)}), attempt {attempt}/{policy.max_attempts}; "
                    f"retrying in {delay}s"
                )
                self._sleep(delay)

        msg = f"Giving up after {policy.max_attempts} attempts: {message}"
        raise PermanentError(msg, target=spec.target, path=spec.path, status=status, attempts=policy.max_attempts)
