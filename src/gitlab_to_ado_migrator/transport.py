"""HTTP transports: in-process ``requests`` first, ``curl`` subprocess as fallback.

Some destination servers sit behind TLS terminators that drop connections
mid-request. The primary transport classifies those failures as
fallback-eligible; ``FallbackTransport`` then re-issues the identical request
through ``curl --insecure``, which tolerates them.

curl mixes response headers and body in one stream, so it is asked to append
``HTTP_CODE:<status>`` after the body and the status is taken from that
sentinel only.
"""

from __future__ import annotations

import http.client
import logging
import math
import subprocess
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import urlencode

import requests
import urllib3

from .exceptions import TransportError
from .models import RequestSpec, TargetSystem, TransportKind, TransportResult

if TYPE_CHECKING:
    from .credentials import SecretMasker
    from .protocols import Transport

logger: logging.Logger = logging.getLogger(__name__)

SENTINEL: Final[bytes] = b"HTTP_CODE:"

# Lower-cased fragments of primary-transport errors that curl is known to survive
_FALLBACK_MARKERS: Final[tuple[str, ...]] = (
    "forcibly closed",
    "connection reset",
    "connection aborted",
    "remote end closed",
    "remotedisconnected",
    "error occurred while sending",
    "eof occurred in violation of protocol",
    "unexpected eof",
)

_FALLBACK_TYPES: Final[tuple[type[BaseException], ...]] = (
    ConnectionResetError,
    ConnectionAbortedError,
    http.client.RemoteDisconnected,
    requests.exceptions.SSLError,
    requests.exceptions.ChunkedEncodingError,
)


def _mask(masker: SecretMasker | None, text: str) -> str:
    return masker.mask(text) if masker is not None else text


def _exception_chain(exc: BaseException) -> list[BaseException]:
    """Flatten an exception with its causes, contexts and wrapped exception args."""
    seen: list[BaseException] = []
    pending: list[BaseException] = [exc]
    while pending:
        current = pending.pop()
        if any(current is s for s in seen):
            continue
        seen.append(current)
        pending.extend(a for a in current.args if isinstance(a, BaseException))
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            pending.append(reason)
        for linked in (current.__cause__, current.__context__):
            if linked is not None:
                pending.append(linked)
    return seen


def is_fallback_eligible(exc: BaseException) -> bool:
    """Whether a primary-transport failure should be retried through curl."""
    for item in _exception_chain(exc):
        if isinstance(item, _FALLBACK_TYPES):
            return True
        text = str(item).lower()
        if any(marker in text for marker in _FALLBACK_MARKERS):
            return True
    return False


def _query_params(spec: RequestSpec) -> dict[str, str]:
    params = dict(spec.params)
    if spec.api_version and "api-version" not in params:
        params["api-version"] = spec.api_version
    return params


def _request_headers(spec: RequestSpec) -> dict[str, str]:
    headers = dict(spec.headers)
    if spec.content_type:
        headers["Content-Type"] = spec.content_type
    return headers


class RequestsTransport:
    """Primary transport backed by one ``requests.Session``.

    Certificate validation is disabled for the destination system only.
    """

    kind: TransportKind = TransportKind.PRIMARY

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float = 60.0,
        verify_source: bool | str = True,
        masker: SecretMasker | None = None,
    ) -> None:
        self._session: requests.Session = session or requests.Session()
        self._timeout: float = timeout
        self._verify_source: bool | str = verify_source
        self._masker: SecretMasker | None = masker
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _verify_for(self, target: TargetSystem) -> bool | str:
        return self._verify_source if target is TargetSystem.SOURCE else False

    def send(self, spec: RequestSpec) -> TransportResult:
        started = time.monotonic()
        try:
            response = self._session.request(
                spec.method,
                spec.url,
                headers=_request_headers(spec),
                params=_query_params(spec),
                data=spec.body,
                timeout=self._timeout,
                verify=self._verify_for(spec.target),
            )
        except requests.Timeout as e:
            msg = f"Request timed out after {self._timeout}s: {_mask(self._masker, str(e))}"
            raise TransportError(msg, target=spec.target, path=spec.path) from e
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema) as e:
            msg = f"Invalid request URL: {_mask(self._masker, str(e))}"
            raise TransportError(msg, target=spec.target, path=spec.path, transient=False) from e
        except (requests.RequestException, OSError) as e:
            msg = f"{type(e).__name__}: {_mask(self._masker, str(e))}"
            raise TransportError(
                msg, target=spec.target, path=spec.path, fallback_eligible=is_fallback_eligible(e)
            ) from e

        return TransportResult(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.content,
            elapsed_ms=(time.monotonic() - started) * 1000,
            transport_used=self.kind,
        )


def _parse_header_block(block: bytes) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in block.decode("iso-8859-1").splitlines()[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip()] = value.strip()
    return headers


def _split_headers(stream: bytes) -> tuple[dict[str, str], bytes]:
    """Split curl ``--include`` output into the final header block and the body.

    Intermediate blocks (``100 Continue``, proxy ``CONNECT`` replies) are skipped.
    """
    headers: dict[str, str] = {}
    while stream.startswith(b"HTTP/"):
        positions = [(stream.find(sep), sep) for sep in (b"\r\n\r\n", b"\n\n")]
        positions = [(pos, sep) for pos, sep in positions if pos >= 0]
        if not positions:
            return _parse_header_block(stream), b""
        pos, sep = min(positions)
        headers = _parse_header_block(stream[:pos])
        stream = stream[pos + len(sep) :]
    return headers, stream


def parse_curl_output(raw: bytes) -> tuple[int, dict[str, str], bytes]:
    """Parse curl output into (status, headers, body).

    The status comes only from the trailing ``HTTP_CODE:`` sentinel; a missing
    or non-numeric sentinel (curl reports ``000`` when no response arrived)
    gives status 0.
    """
    index = raw.rfind(SENTINEL)
    if index == -1:
        return 0, {}, raw

    code_text = raw[index + len(SENTINEL) :].strip()
    stream = raw[:index]
    if stream.endswith(b"\n"):
        stream = stream[:-1]

    status = int(code_text) if code_text.isdigit() else 0
    headers, body = _split_headers(stream)
    return status, headers, body


class CurlTransport:
    """Secondary transport running the ``curl`` command-line client.

    Destination requests authenticate with HTTP Basic using an empty user name
    and the secret as password, instead of forwarding the Authorization header.
    """

    kind: TransportKind = TransportKind.FALLBACK

    def __init__(
        self,
        *,
        curl_path: str = "curl",
        timeout: float = 60.0,
        masker: SecretMasker | None = None,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self._curl_path: str = curl_path
        self._timeout: float = timeout
        self._masker: SecretMasker | None = masker
        self._popen: Callable[..., Any] = popen

    def build_command(self, spec: RequestSpec) -> list[str]:
        cmd = [
            self._curl_path,
            "--insecure",
            "--silent",
            "--show-error",
            "--include",
            "--request",
            spec.method.upper(),
            "--write-out",
            "\n" + SENTINEL.decode() + "%{http_code}",
            "--max-time",
            str(max(1, math.ceil(self._timeout))),
        ]
        basic_auth = spec.target is TargetSystem.DESTINATION and bool(spec.credential)
        for name, value in _request_headers(spec).items():
            if basic_auth and name.lower() == "authorization":
                continue
            cmd += ["--header", f"{name}: {value}"]
        if basic_auth:
            cmd += ["--user", f":{spec.credential}"]
        if spec.body is not None:
            cmd += ["--data-binary", "@-"]

        url = spec.url
        params = _query_params(spec)
        if params:
            url = f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"
        cmd.append(url)
        return cmd

    def send(self, spec: RequestSpec) -> TransportResult:
        cmd = self.build_command(spec)
        started = time.monotonic()
        logger.debug(f"Running fallback transport: {_mask(self._masker, ' '.join(cmd))}")

        try:
            with self._popen(  # noqa: S603
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            ) as proc:
                try:
                    stdout, stderr = proc.communicate(input=spec.body, timeout=self._timeout + 5)
                except BaseException:
                    # Timeout, KeyboardInterrupt or anything else: never leave curl running
                    proc.kill()
                    proc.wait()
                    raise
                returncode = proc.returncode
        except subprocess.TimeoutExpired as e:
            msg = f"curl did not finish within {self._timeout}s"
            raise TransportError(msg, target=spec.target, path=spec.path) from e
        except OSError as e:
            msg = f"Cannot run '{self._curl_path}': {e}"
            raise TransportError(msg, target=spec.target, path=spec.path, transient=False) from e

        status, headers, body = parse_curl_output(stdout or b"")
        if status == 0:
            detail = (stderr or b"").decode("utf-8", errors="replace").strip() or "no HTTP status in output"
            msg = f"curl exited with code {returncode}: {_mask(self._masker, detail)}"
            raise TransportError(msg, target=spec.target, path=spec.path)

        return TransportResult(
            status_code=status,
            headers=headers,
            body=body,
            elapsed_ms=(time.monotonic() - started) * 1000,
            transport_used=self.kind,
        )


class FallbackTransport:
    """Sends through the primary transport, re-issuing eligible failures through the fallback."""

    def __init__(self, primary: Transport, fallback: Transport | None = None) -> None:
        self.primary: Transport = primary
        self.fallback: Transport | None = fallback

    def send(self, spec: RequestSpec) -> TransportResult:
        try:
            return self.primary.send(spec)
        except TransportError as e:
            if not e.fallback_eligible or self.fallback is None:
                raise
            primary_error = e

        logger.warning(
            f"Primary transport failed for {spec.method} {spec.path} ({primary_error.message}); "
            "re-issuing through fallback transport"
        )
        try:
            return self.fallback.send(spec)
        except TransportError as e:
            msg = f"Both transports failed. Primary: {primary_error.message}. Fallback: {e.message}"
            raise TransportError(
                msg, target=spec.target, path=spec.path, status=e.status, transient=e.transient
            ) from e


def build_transport(
    *,
    timeout: float,
    verify_source: bool | str,
    curl_path: str,
    fallback_enabled: bool,
    masker: SecretMasker | None,
    session: requests.Session | None = None,
) -> FallbackTransport:
    """Assemble the default primary + fallback transport stack."""
    primary = RequestsTransport(session=session, timeout=timeout, verify_source=verify_source, masker=masker)
    fallback = CurlTransport(curl_path=curl_path, timeout=timeout, masker=masker) if fallback_enabled else None
    return FallbackTransport(primary, fallback)

