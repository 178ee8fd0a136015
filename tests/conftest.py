"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings

It also provides a scripted transport so unit tests never touch the network.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, override

import pytest

from gitlab_to_ado_migrator.api import DestinationApi, SourceApi
from gitlab_to_ado_migrator.models import RequestSpec, TransportKind, TransportResult
from gitlab_to_ado_migrator.retry import RetryController

if TYPE_CHECKING:
    from collections.abc import Callable, Generator


# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        if self.test_nodeid not in _integration_test_warnings:
            _integration_test_warnings[self.test_nodeid] = []
        _integration_test_warnings[self.test_nodeid].append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    This fixture captures logging output and fails the test if any WARNING or ERROR
    level logs are detected during integration tests. These would come from logger.warning()
    or logger.error() calls in the source code.

    Warnings from the test code itself (via warnings.warn()) are allowed, as they are
    just informational output. This fixture specifically targets logger warnings which
    indicate issues in the code under test.

    Warnings are acceptable when running the tool as a user, but in the test context
    we don't expect any warnings from the provisioning code and treat them as test failures.
    """
    # Check if this is an integration test
    is_integration_test = request.node.get_closest_marker("integration") is not None

    if not is_integration_test:
        # For unit tests and other tests, don't check for warnings
        yield
        return

    # For integration tests, set up warning capture
    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    # Add handler to root logger to capture all warnings
    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        # Clean up - remove the handler
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """
    Hook to check for warnings after test execution and mark test as failed if warnings were detected.

    This runs after the test completes but before pytest generates the final report.
    """
    # Execute the test and get the report
    outcome = yield
    report = outcome.get_result()

    # Only check during the test call phase (not setup or teardown)
    if call.when == "call" and report.outcome == "passed":
        # Check if this test has any captured warnings
        test_nodeid = item.nodeid
        warning_records = _integration_test_warnings.get(test_nodeid, [])

        if warning_records:
            # Format warning messages for better readability
            warning_messages = [
                f"{record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            ]

            # Mark the test as failed
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) detected:\n" + "\n".join(
                f"  - {msg}" for msg in warning_messages
            )

        # Clean up the warnings for this test
        _integration_test_warnings.pop(test_nodeid, None)


class ScriptedTransport:
    """Transport double that replays queued results or raises queued errors."""

    def __init__(self) -> None:
        self.replies: list[TransportResult | BaseException] = []
        self.sent: list[RequestSpec] = []

    def add(self, *replies: TransportResult | BaseException) -> ScriptedTransport:
        self.replies.extend(replies)
        return self

    def send(self, spec: RequestSpec) -> TransportResult:
        self.sent.append(spec)
        if not self.replies:
            msg = f"Unexpected request: {spec.method} {spec.path}"
            raise AssertionError(msg)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    @property
    def calls(self) -> list[tuple[str, str]]:
        return [(spec.method, spec.path) for spec in self.sent]


def make_result(
    status: int,
    data: Any = None,
    *,
    headers: dict[str, str] | None = None,
    kind: TransportKind = TransportKind.PRIMARY,
) -> TransportResult:
    """Build a transport result; dicts and lists are sent as JSON."""
    if data is None:
        body = b""
    elif isinstance(data, bytes):
        body = data
    else:
        body = json.dumps(data).encode()
    all_headers = {"Content-Type": "application/json"} if isinstance(data, (dict, list)) else {}
    all_headers.update(headers or {})
    return TransportResult(status_code=status, headers=all_headers, body=body, elapsed_ms=1.0, transport_used=kind)


@pytest.fixture
def reply() -> Callable[..., TransportResult]:
    return make_result


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def retry(transport: ScriptedTransport, sleeps: list[float]) -> RetryController:
    return RetryController(transport, sleep=sleeps.append)


@pytest.fixture
def destination(retry: RetryController, sleeps: list[float]) -> DestinationApi:
    return DestinationApi("https://ado.example/DefaultCollection", "pat-secret", retry, sleep=sleeps.append)


@pytest.fixture
def source(retry: RetryController) -> SourceApi:
    return SourceApi("https://gitlab.example", "glpat-secret", retry)
