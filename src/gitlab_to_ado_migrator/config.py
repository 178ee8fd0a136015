"""Layered YAML configuration.

Files are read in order and deep-merged, later files overriding earlier ones:

1. ``~/.config/gitlab-to-ado/config.yaml``
2. ``./migration.yaml``
3. any paths given explicitly (e.g. ``--config``)

Missing default files are skipped; a missing explicit path is an error.

Example::

    source:
      url: https://gitlab.example.com
    destination:
      url: https://ado.example.com/DefaultCollection
      api_version: "7.0"
      auth_scheme: basic
    credentials:
      source_token: pass:gitlab/cli/ro_token
    retry:
      provisioning: {max_attempts: 6, backoff: [2, 4, 8, 16, 32]}
      read: {max_attempts: 4, backoff: [1, 2, 4]}
    field_mappings:
      Custom.Risk:
        High: "1 - High"
        "Sev*": "Severity *"
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import yaml

from .exceptions import ConfigurationError
from .models import PROVISIONING_POLICY, READ_POLICY, RETRYABLE_STATUSES, RetryPolicy

logger: logging.Logger = logging.getLogger(__name__)

USER_CONFIG_PATH: Final[Path] = Path("~/.config/gitlab-to-ado/config.yaml")
PROJECT_CONFIG_PATH: Final[Path] = Path("migration.yaml")

_AUTH_SCHEMES: Final[frozenset[str]] = frozenset({"basic", "bearer"})


@dataclass(frozen=True)
class Settings:
    """Settings for one migration run."""

    source_url: str = ""
    destination_url: str = ""
    api_version: str = "7.0"
    auth_scheme: str = "basic"
    source_verify_tls: bool = True
    timeout_seconds: float = 60.0
    curl_path: str = "curl"
    fallback_enabled: bool = True
    settle_seconds: float = 2.0
    provisioning_policy: RetryPolicy = PROVISIONING_POLICY
    read_policy: RetryPolicy = READ_POLICY
    credentials: Mapping[str, Any] = field(default_factory=dict)
    field_mappings: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    work_item_type: str = "Task"


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = copy.deepcopy(dict(base))
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in {path}: {e}"
        raise ConfigurationError(msg) from e
    except OSError as e:
        msg = f"Cannot read configuration file {path}: {e}"
        raise ConfigurationError(msg) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Configuration file {path} must contain a mapping at top level"
        raise ConfigurationError(msg)
    return data


def load_layers(paths: Sequence[str | Path] = (), *, include_defaults: bool = True) -> dict[str, Any]:
    """Read and deep-merge all configuration layers into one raw dict."""
    merged: dict[str, Any] = {}
    if include_defaults:
        for default_path in (USER_CONFIG_PATH.expanduser(), PROJECT_CONFIG_PATH):
            if default_path.is_file():
                logger.debug(f"Loading config layer: {default_path}")
                merged = deep_merge(merged, _read_yaml(default_path))

    for raw_path in paths:
        path = Path(raw_path).expanduser()
        if not path.is_file():
            msg = f"Configuration file not found: {path}"
            raise ConfigurationError(msg)
        logger.debug(f"Loading config layer: {path}")
        merged = deep_merge(merged, _read_yaml(path))

    return merged


def _policy_from(raw: Mapping[str, Any] | None, default: RetryPolicy, name: str) -> RetryPolicy:
    if not raw:
        return default
    try:
        return RetryPolicy(
            max_attempts=int(raw.get("max_attempts", default.max_attempts)),
            backoff_schedule=tuple(float(s) for s in raw.get("backoff", default.backoff_schedule)),
            retryable_statuses=frozenset(int(s) for s in raw.get("retryable_statuses", RETRYABLE_STATUSES)),
        )
    except (TypeError, ValueError) as e:
        msg = f"Invalid retry policy '{name}': {e}"
        raise ConfigurationError(msg) from e


def settings_from_dict(raw: Mapping[str, Any]) -> Settings:
    """Validate a merged configuration dict and build Settings from it."""
    source: Mapping[str, Any] = raw.get("source") or {}
    destination: Mapping[str, Any] = raw.get("destination") or {}
    transport: Mapping[str, Any] = raw.get("transport") or {}
    retry: Mapping[str, Any] = raw.get("retry") or {}

    auth_scheme = str(destination.get("auth_scheme", "basic")).lower()
    if auth_scheme not in _AUTH_SCHEMES:
        msg = f"destination.auth_scheme must be one of {sorted(_AUTH_SCHEMES)}, got '{auth_scheme}'"
        raise ConfigurationError(msg)

    field_mappings = raw.get("field_mappings") or {}
    if not isinstance(field_mappings, Mapping) or not all(isinstance(v, Mapping) for v in field_mappings.values()):
        msg = "field_mappings must map field names to {source value: destination value} tables"
        raise ConfigurationError(msg)

    try:
        return Settings(
            source_url=str(source.get("url", "")).rstrip("/"),
            destination_url=str(destination.get("url", "")).rstrip("/"),
            api_version=str(destination.get("api_version", "7.0")),
            auth_scheme=auth_scheme,
            source_verify_tls=bool(source.get("verify_tls", True)),
            timeout_seconds=float(transport.get("timeout_seconds", 60.0)),
            curl_path=str(transport.get("curl_path", "curl")),
            fallback_enabled=bool(transport.get("fallback", True)),
            settle_seconds=float(raw.get("settle_seconds", 2.0)),
            provisioning_policy=_policy_from(retry.get("provisioning"), PROVISIONING_POLICY, "provisioning"),
            read_policy=_policy_from(retry.get("read"), READ_POLICY, "read"),
            credentials=dict(raw.get("credentials") or {}),
            field_mappings={k: {str(a): str(b) for a, b in v.items()} for k, v in field_mappings.items()},
            work_item_type=str(destination.get("work_item_type", "Task")),
        )
    except (TypeError, ValueError) as e:
        msg = f"Invalid configuration value: {e}"
        raise ConfigurationError(msg) from e


def load_settings(paths: Sequence[str | Path] = (), *, include_defaults: bool = True) -> Settings:
    """Load layered configuration files into Settings."""
    return settings_from_dict(load_layers(paths, include_defaults=include_defaults))
