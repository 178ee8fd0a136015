"""
GitLab to Azure DevOps Migration Tool

Idempotently provisions Azure DevOps projects, repositories, wikis,
classification nodes, queries, dashboards and work items while migrating
from GitLab, over a retrying HTTP transport with a curl fallback.
"""

from __future__ import annotations

from .cli import main
from .config import Settings, load_settings
from .context import MigrationContext
from .ensure import EnsureEngine
from .exceptions import (
    ConfigurationError,
    FieldValueError,
    MigrationError,
    MissingCredentialError,
    PermanentError,
    TransportError,
)
from .models import EnsureOutcome, ResourceDescriptor, ResourceHandle, RetryPolicy
from .provisioner import Provisioner, ProvisioningReport
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "EnsureEngine",
    "EnsureOutcome",
    "FieldValueError",
    "MigrationContext",
    "MigrationError",
    "MissingCredentialError",
    "PermanentError",
    "Provisioner",
    "ProvisioningReport",
    "ResourceDescriptor",
    "ResourceHandle",
    "RetryPolicy",
    "Settings",
    "TransportError",
    "load_settings",
    "main",
    "setup_logging",
]
