"""Provisioning runs that ensure many resources without aborting on failures.

A failure while ensuring one resource (permanent HTTP error, missing
credential, invalid field value) is recorded with enough context to retry
that resource alone, and the run moves on to its siblings. Resources whose
parent failed are recorded as failed without any request being sent.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError, MigrationError
from .models import EnsureOutcome, EnsureResult, ResourceDescriptor

if TYPE_CHECKING:
    from .context import MigrationContext
    from .models import ResourceHandle
    from .protocols import ResourceKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceFailure:
    """Context needed to retry one failed resource later."""

    resource_type: str
    natural_key: str
    message: str
    target: str | None = None
    path: str | None = None
    status: int | None = None


@dataclass
class ProvisioningStats:
    """Statistics collected during a provisioning run."""

    adopted: int = 0
    created: int = 0
    failures: list[ResourceFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


@dataclass
class ProvisioningReport:
    """Result of a provisioning run."""

    results: list[EnsureResult] = field(default_factory=list)
    stats: ProvisioningStats = field(default_factory=ProvisioningStats)

    @property
    def success(self) -> bool:
        return not self.stats.failures

    def add_failure(self, descriptor: ResourceDescriptor, error: Exception) -> None:
        self.stats.failures.append(_failure_from(descriptor, error))

    def handle(self, resource_type: str, natural_key: str) -> ResourceHandle | None:
        for result in self.results:
            d = result.descriptor
            if d.resource_type == resource_type and d.natural_key == natural_key:
                return result.handle
        return None


def _failure_from(descriptor: ResourceDescriptor, error: Exception) -> ResourceFailure:
    target = getattr(error, "target", None)
    return ResourceFailure(
        resource_type=descriptor.resource_type,
        natural_key=descriptor.natural_key,
        message=str(error),
        target=target.value if target is not None else None,
        path=getattr(error, "path", None),
        status=getattr(error, "status", None),
    )


def with_ancestors(path: str) -> list[str]:
    """``A/B/C`` -> ``["A", "A/B", "A/B/C"]``, so parent nodes are ensured first."""
    parts = [p for p in path.split("/") if p]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


class Provisioner:
    """Ensures resources through the context's engine and collects a report."""

    def __init__(self, context: MigrationContext) -> None:
        self._context: MigrationContext = context

    def ensure(
        self,
        descriptor: ResourceDescriptor,
        report: ProvisioningReport,
        *,
        kind: ResourceKind | None = None,
    ) -> ResourceHandle | None:
        """Ensure one resource, recording the outcome in ``report``."""
        if kind is None:
            project = descriptor.natural_key if descriptor.resource_type == "project" else None
            if descriptor.parent is not None and descriptor.parent.resource_type == "project":
                project = descriptor.parent.natural_key
            project = project or descriptor.desired_state.get("project")
            kind = self._context.kinds(project)[descriptor.resource_type]

        result = self._context.engine.try_ensure(kind, descriptor)
        self._record(result, report)
        return result.handle

    def _record(self, result: EnsureResult, report: ProvisioningReport) -> None:
        report.results.append(result)
        if result.outcome is EnsureOutcome.ADOPTED:
            report.stats.adopted += 1
        elif result.outcome is EnsureOutcome.CREATED:
            report.stats.created += 1
        else:
            error = result.error or MigrationError("unknown failure")
            report.add_failure(result.descriptor, error)

    def _skip(self, descriptors: Iterable[ResourceDescriptor], reason: str, report: ProvisioningReport) -> None:
        for descriptor in descriptors:
            logger.warning(f"Skipping {descriptor.resource_type} '{descriptor.natural_key}': {reason}")
            self._context.history.emit(f"ensure:{descriptor.resource_type}", "skipped", descriptor.natural_key)
            self._record(
                EnsureResult(descriptor=descriptor, outcome=EnsureOutcome.FAILED, error=MigrationError(reason)),
                report,
            )

    def provision_project(
        self,
        project: str,
        *,
        description: str = "",
        repositories: Iterable[str] = (),
        area_paths: Iterable[str] = (),
        iterations: Iterable[str] = (),
        wiki: bool = False,
    ) -> ProvisioningReport:
        """Ensure a project and the resources that live inside it."""
        report = ProvisioningReport()
        project_handle = self.ensure(
            ResourceDescriptor("project", project, {"description": description}), report
        )

        dependents: list[ResourceDescriptor] = [
            ResourceDescriptor("repository", name, parent=project_handle) for name in dict.fromkeys(repositories)
        ]
        for resource_type, paths in (("area_path", area_paths), ("iteration", iterations)):
            nodes = dict.fromkeys(node for path in paths for node in with_ancestors(path))
            dependents += [ResourceDescriptor(resource_type, node, parent=project_handle) for node in nodes]
        if wiki:
            dependents.append(ResourceDescriptor("wiki", f"{project}.wiki", parent=project_handle))

        if project_handle is None:
            self._skip(dependents, f"project '{project}' could not be ensured", report)
            return report

        for descriptor in dependents:
            self.ensure(descriptor, report)

        logger.info(
            f"Project '{project}': {report.stats.created} created, {report.stats.adopted} adopted, "
            f"{report.stats.failed} failed"
        )
        return report

    def repositories_from_gitlab_group(self, group: str) -> list[str]:
        """Names of the active projects in a GitLab group, used as repository names."""
        if self._context.source is None:
            msg = "source.url is not configured; cannot list GitLab projects"
            raise ConfigurationError(msg)
        projects = self._context.source.list_group_projects(group)
        return [str(p["path"]) for p in projects if isinstance(p, dict) and p.get("path")]
