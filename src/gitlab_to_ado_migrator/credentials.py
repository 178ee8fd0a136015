"""Credential resolution from layered sources, and masking of resolved secrets.

Resolution order, highest priority first:

1. an explicit value passed at the call site (e.g. a CLI option)
2. an environment variable (``GITLAB_TOKEN`` / ``AZURE_DEVOPS_TOKEN`` by default)
3. the ``credentials`` section of the layered configuration

A configuration value written as ``pass:<path>`` is read from the ``pass``
password store instead of being stored in the YAML file.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from typing import Any, Final, override

from . import utils
from .exceptions import MissingCredentialError
from .models import CredentialContext

logger: logging.Logger = logging.getLogger(__name__)

MASK: Final[str] = "****"
_PASS_PREFIX: Final[str] = "pass:"

DEFAULT_ENV_VARS: Final[dict[str, str]] = {
    "source_token": "GITLAB_TOKEN",
    "destination_token": "AZURE_DEVOPS_TOKEN",
}


def mask_secret(value: str) -> str:
    """Keep the first and last two characters of a secret, hide the rest.

    Secrets of four characters or fewer are replaced entirely.
    """
    if len(value) <= 4:
        return MASK
    return f"{value[:2]}{MASK}{value[-2:]}"


class SecretMasker:
    """Registry of resolved secrets, replacing them wherever they appear in text."""

    def __init__(self) -> None:
        self._secrets: set[str] = set()

    def register(self, secret: str | None) -> None:
        if secret:
            self._secrets.add(secret)

    def mask(self, text: str) -> str:
        # Longest first so a secret containing another one is masked whole
        for secret in sorted(self._secrets, key=len, reverse=True):
            if secret in text:
                text = text.replace(secret, mask_secret(secret))
        return text

    def __len__(self) -> int:
        return len(self._secrets)


class SecretMaskingFilter(logging.Filter):
    """Logging filter that masks registered secrets in every record."""

    def __init__(self, masker: SecretMasker) -> None:
        super().__init__()
        self.masker: SecretMasker = masker

    @override
    def filter(self, record: logging.LogRecord) -> bool:
        if len(self.masker):
            record.msg = self.masker.mask(record.getMessage())
            record.args = None
        return True


class CredentialResolver:
    """Resolves named secrets; the first non-empty source wins."""

    def __init__(
        self,
        config: Mapping[str, Any] | None = None,
        *,
        env: Mapping[str, str] | None = None,
        env_vars: Mapping[str, str] | None = None,
        masker: SecretMasker | None = None,
    ) -> None:
        self._config: Mapping[str, Any] = config or {}
        self._env: Mapping[str, str] = os.environ if env is None else env
        self._env_vars: dict[str, str] = dict(DEFAULT_ENV_VARS)
        if env_vars:
            self._env_vars.update(env_vars)
        self.masker: SecretMasker = masker if masker is not None else SecretMasker()

    def context(self, name: str, explicit: str | None = None) -> CredentialContext:
        """Build the ordered candidate list for ``name`` without reading ``pass``."""
        ctx = CredentialContext(name=name)
        ctx.candidates.append(("parameter", explicit))
        env_var = self._env_vars.get(name)
        if env_var:
            ctx.candidates.append((f"env:{env_var}", self._env.get(env_var)))
        config_value = self._config.get(name)
        ctx.candidates.append(("config", str(config_value) if config_value else None))
        return ctx

    def resolve(self, name: str, explicit: str | None = None) -> str:
        """Resolve a credential, raising MissingCredentialError if no source has it."""
        ctx = self.context(name, explicit)
        winner = ctx.winner()
        if winner is None:
            raise MissingCredentialError(name, [source for source, _ in ctx.candidates])

        source, value = winner
        if source == "config" and value.startswith(_PASS_PREFIX):
            pass_path = value.removeprefix(_PASS_PREFIX)
            try:
                value = utils.get_pass_value(pass_path)
            except utils.PassError as e:
                raise MissingCredentialError(name, [f"pass:{pass_path}"]) from e
            source = f"pass:{pass_path}"
            if not value:
                raise MissingCredentialError(name, [source])

        self.masker.register(value)
        logger.debug(f"Resolved credential '{name}' from {source}: {mask_secret(value)}")
        return value

    def resolve_optional(self, name: str, explicit: str | None = None) -> str | None:
        try:
            return self.resolve(name, explicit)
        except MissingCredentialError:
            return None
