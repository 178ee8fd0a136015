"""Request facades for the source (GitLab) and destination (Azure DevOps) systems.

Each facade owns its base URL and authentication, sends through the retry
controller and normalizes every response into one ``ApiResponse``. The two
facades know nothing about each other; translating names between systems is
left to the caller.
"""

from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import Callable, Iterator, Mapping
from typing import Any, ClassVar, Final
from urllib.parse import quote

from .exceptions import FacadeError, PermanentError
from .models import (
    PROVISIONING_POLICY,
    READ_POLICY,
    ApiResponse,
    Lookup,
    RequestSpec,
    RetryPolicy,
    TargetSystem,
    TransportResult,
)
from .retry import RetryController, is_absent_probe

logger: logging.Logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE: Final[str] = "application/json"
JSON_PATCH_CONTENT_TYPE: Final[str] = "application/json-patch+json"


def encode_segment(value: str) -> str:
    """Percent-encode a single path segment, including any slashes."""
    return quote(value, safe="")


def _encode_body(body: Any, content_type: str | None) -> tuple[bytes | None, str | None]:
    if body is None:
        return None, content_type
    if isinstance(body, bytes):
        return body, content_type or "application/octet-stream"
    if isinstance(body, str):
        return body.encode("utf-8"), content_type or "text/plain; charset=utf-8"
    return json.dumps(body).encode("utf-8"), content_type or JSON_CONTENT_TYPE


class _ApiFacade:
    """Shared request building and response parsing."""

    target: ClassVar[TargetSystem]

    def __init__(
        self,
        base_url: str,
        retry: RetryController,
        *,
        read_policy: RetryPolicy = READ_POLICY,
        write_policy: RetryPolicy = PROVISIONING_POLICY,
        api_version: str | None = None,
    ) -> None:
        self.base_url: str = base_url.rstrip("/")
        self._retry: RetryController = retry
        self._read_policy: RetryPolicy = read_policy
        self._write_policy: RetryPolicy = write_policy
        self.api_version: str | None = api_version

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _credential(self) -> str | None:
        return None

    def build_spec(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Mapping[str, str] | None = None,
        content_type: str | None = None,
        api_version: str | None = None,
        existence_probe: bool = False,
    ) -> RequestSpec:
        payload, payload_type = _encode_body(body, content_type)
        headers = {"Accept": JSON_CONTENT_TYPE, **self._auth_headers()}
        return RequestSpec(
            method=method.upper(),
            path=path,
            base_url=self.base_url,
            target=self.target,
            body=payload,
            content_type=payload_type,
            api_version=api_version or self.api_version,
            headers=headers,
            params=dict(params or {}),
            credential=self._credential(),
            existence_probe=existence_probe,
        )

    def _policy_for(self, spec: RequestSpec) -> RetryPolicy:
        return self._read_policy if spec.is_read else self._write_policy

    def _parse(self, spec: RequestSpec, result: TransportResult) -> ApiResponse:
        content_type = (result.header("Content-Type") or "").lower()
        raw = result.body.strip()
        if not raw:
            data: Any = None
        elif "json" in content_type or (not content_type and raw[:1] in (b"{", b"[")):
            try:
                data = json.loads(raw)
            except ValueError as e:
                msg = f"Response is not valid JSON ({content_type or 'no content type'}): {e}"
                raise FacadeError(msg, target=self.target, path=spec.path, status=result.status_code) from e
        else:
            data = result.text
        return ApiResponse(
            status_code=result.status_code,
            data=data,
            headers=dict(result.headers),
            transport_used=result.transport_used,
        )

    def call(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Mapping[str, str] | None = None,
        content_type: str | None = None,
        api_version: str | None = None,
    ) -> ApiResponse:
        """Send a request and return the parsed response.

        Raises:
            PermanentError: On any non-success status, including 404.
            FacadeError: When a JSON response cannot be decoded.
        """
        spec = self.build_spec(method, path, body, params=params, content_type=content_type, api_version=api_version)
        result = self._retry.send(spec, self._policy_for(spec))
        return self._parse(spec, result)

    def probe(
        self, path: str, *, params: Mapping[str, str] | None = None, api_version: str | None = None
    ) -> Lookup:
        """GET a resource by natural key; a 404 comes back as ``Lookup.absent()``."""
        spec = self.build_spec("GET", path, params=params, api_version=api_version, existence_probe=True)
        result = self._retry.send(spec, self._read_policy)
        if is_absent_probe(spec, result.status_code):
            logger.debug(f"{self.target.value}: {path} not found")
            return Lookup.absent()
        return Lookup.of(self._parse(spec, result))

    def get(self, path: str, *, params: Mapping[str, str] | None = None, api_version: str | None = None) -> ApiResponse:
        return self.call("GET", path, params=params, api_version=api_version)

    def post(self, path: str, body: Any = None, **kwargs: Any) -> ApiResponse:
        return self.call("POST", path, body, **kwargs)

    def put(self, path: str, body: Any = None, **kwargs: Any) -> ApiResponse:
        return self.call("PUT", path, body, **kwargs)

    def patch(self, path: str, body: Any = None, **kwargs: Any) -> ApiResponse:
        return self.call("PATCH", path, body, **kwargs)


class SourceApi(_ApiFacade):
    """GitLab REST API v4 with a static ``PRIVATE-TOKEN`` header."""

    target: ClassVar[TargetSystem] = TargetSystem.SOURCE

    def __init__(self, url: str, token: str, retry: RetryController, **kwargs: Any) -> None:
        super().__init__(f"{url.rstrip('/')}/api/v4", retry, **kwargs)
        self._token: str = token

    def _auth_headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self._token}

    def paginate(self, path: str, *, params: Mapping[str, str] | None = None, per_page: int = 100) -> Iterator[Any]:
        """Yield every item of a paginated collection, following ``X-Next-Page``."""
        page: str | None = "1"
        while page:
            response = self.get(path, params={**(params or {}), "per_page": str(per_page), "page": page})
            yield from response.items()
            page = (response.header("X-Next-Page") or "").strip() or None

    def get_project(self, project_path: str) -> Lookup:
        return self.probe(f"projects/{encode_segment(project_path)}")

    def list_group_projects(self, group_path: str, *, include_subgroups: bool = True) -> list[dict[str, Any]]:
        params = {"include_subgroups": "true" if include_subgroups else "false", "archived": "false"}
        return list(self.paginate(f"groups/{encode_segment(group_path)}/projects", params=params))


class DestinationApi(_ApiFacade):
    """Azure DevOps collection REST API.

    The primary transport sends the PAT as ``Basic base64(":" + pat)`` (or as a
    bearer token); the PAT is also carried on each request for the curl
    fallback, which authenticates with an empty user name instead.
    """

    target: ClassVar[TargetSystem] = TargetSystem.DESTINATION

    _OPERATION_DONE: ClassVar[frozenset[str]] = frozenset({"succeeded"})
    _OPERATION_FAILED: ClassVar[frozenset[str]] = frozenset({"failed", "cancelled"})

    def __init__(
        self,
        collection_url: str,
        token: str,
        retry: RetryController,
        *,
        api_version: str = "7.0",
        auth_scheme: str = "basic",
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(collection_url, retry, api_version=api_version, **kwargs)
        self._token: str = token
        self.auth_scheme: str = auth_scheme
        self._sleep: Callable[[float], None] = sleep

    def _auth_headers(self) -> dict[str, str]:
        if self.auth_scheme == "bearer":
            return {"Authorization": f"Bearer {self._token}"}
        encoded = base64.b64encode(f":{self._token}".encode()).decode()
        return {"Authorization": f"Basic {encoded}"}

    def _credential(self) -> str | None:
        return self._token

    def get_optional(self, path: str, *, params: Mapping[str, str] | None = None, api_version: str | None = None) -> ApiResponse | None:
        """GET an endpoint that may not exist on this server (e.g. Graph APIs); 404 gives None."""
        lookup = self.probe(path, params=params, api_version=api_version)
        if not lookup.found:
            logger.info(f"Endpoint {path} is not available on this server")
        return lookup.response

    def wait_for_operation(self, operation_id: str, *, timeout: float = 300.0, interval: float = 2.0) -> ApiResponse:
        """Poll a long-running operation (e.g. project creation) until it finishes."""
        path = f"_apis/operations/{encode_segment(operation_id)}"
        waited = 0.0
        while True:
            response = self.get(path)
            status = str(response.get("status", "")).lower()
            if status in self._OPERATION_DONE:
                return response
            if status in self._OPERATION_FAILED:
                detail = response.get("detailedMessage") or response.get("resultMessage") or status
                msg = f"Operation {operation_id} {status}: {detail}"
                raise PermanentError(msg, target=self.target, path=path, status=response.status_code)
            if waited >= timeout:
                msg = f"Operation {operation_id} still '{status}' after {timeout}s"
                raise PermanentError(msg, target=self.target, path=path, status=response.status_code)
            self._sleep(interval)
            waited += interval
