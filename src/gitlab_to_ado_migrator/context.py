"""Explicit wiring of one migration session.

Everything that used to be process-wide state (collection URL, cached field
schemas, transport preference) lives on a ``MigrationContext`` that callers
construct once and pass around, so independent contexts can coexist.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .api import DestinationApi, SourceApi
from .credentials import CredentialResolver, SecretMasker
from .ensure import EnsureEngine
from .exceptions import ConfigurationError
from .field_cache import FieldSchemaCache
from .history import HistoryEmitter, HistorySink
from .resources import default_kinds
from .retry import RetryController
from .transport import build_transport
from .value_mapping import FieldValueMapper

if TYPE_CHECKING:
    import requests

    from .config import Settings
    from .protocols import ResourceKind, Transport

logger: logging.Logger = logging.getLogger(__name__)


@dataclass
class MigrationContext:
    """All collaborators of one session, built once and passed explicitly."""

    settings: Settings
    credentials: CredentialResolver
    destination: DestinationApi
    engine: EnsureEngine
    history: HistoryEmitter
    mapper: FieldValueMapper
    source: SourceApi | None = None
    _field_caches: dict[str, FieldSchemaCache] = field(default_factory=dict)

    @property
    def masker(self) -> SecretMasker:
        return self.credentials.masker

    def field_cache(self, project: str) -> FieldSchemaCache:
        """The session's field cache for a project (created on first use).

        One cache serves every work item type of the project; the configured
        ``work_item_type`` is only its default for type-less lookups.
        """
        cache = self._field_caches.get(project)
        if cache is None:
            cache = FieldSchemaCache(self.destination, project, work_item_type=self.settings.work_item_type)
            self._field_caches[project] = cache
        return cache

    def kinds(self, project: str | None = None) -> dict[str, ResourceKind]:
        cache = self.field_cache(project) if project else None
        return default_kinds(field_cache=cache, mapper=self.mapper, work_item_type=self.settings.work_item_type)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        source_token: str | None = None,
        destination_token: str | None = None,
        env: Mapping[str, str] | None = None,
        history_sink: HistorySink | None = None,
        masker: SecretMasker | None = None,
        transport: Transport | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> MigrationContext:
        """Resolve credentials and assemble facades, cache and engine.

        Raises:
            ConfigurationError: If the destination URL is not configured.
            MissingCredentialError: If a required token cannot be resolved.
        """
        if not settings.destination_url:
            msg = "destination.url is not configured"
            raise ConfigurationError(msg)

        if masker is None:
            masker = SecretMasker()
        credentials = CredentialResolver(settings.credentials, env=env, masker=masker)
        dest_token = credentials.resolve("destination_token", destination_token)

        if transport is None:
            transport = build_transport(
                timeout=settings.timeout_seconds,
                verify_source=settings.source_verify_tls,
                curl_path=settings.curl_path,
                fallback_enabled=settings.fallback_enabled,
                masker=masker,
                session=session,
            )
        retry = RetryController(transport, sleep=sleep)
        policies = {"read_policy": settings.read_policy, "write_policy": settings.provisioning_policy}

        destination = DestinationApi(
            settings.destination_url,
            dest_token,
            retry,
            api_version=settings.api_version,
            auth_scheme=settings.auth_scheme,
            sleep=sleep,
            **policies,
        )

        source: SourceApi | None = None
        if settings.source_url:
            src_token = credentials.resolve("source_token", source_token)
            source = SourceApi(settings.source_url, src_token, retry, **policies)

        history = HistoryEmitter(history_sink)
        engine = EnsureEngine(destination, history=history, settle_seconds=settings.settle_seconds, sleep=sleep)
        logger.debug(f"Migration context ready for {settings.destination_url}")
        return cls(
            settings=settings,
            credentials=credentials,
            destination=destination,
            engine=engine,
            history=history,
            mapper=FieldValueMapper(settings.field_mappings),
            source=source,
        )
