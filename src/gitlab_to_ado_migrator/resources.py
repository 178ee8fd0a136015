"""Resource kinds provisioned on the destination (Azure DevOps).

Each kind only knows how to CHECK for and CREATE one resource type; the
control flow lives in ``ensure.EnsureEngine``. Kinds that depend on a project
take the project name from the descriptor's parent handle (when the parent is
a project) or from ``desired_state["project"]``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, ClassVar, Final

from .api import JSON_PATCH_CONTENT_TYPE, encode_segment
from .exceptions import FieldValueError, MigrationError
from .models import ApiResponse, Lookup, ResourceHandle

if TYPE_CHECKING:
    from .api import DestinationApi
    from .exceptions import PermanentError
    from .field_cache import FieldSchemaCache
    from .models import ResourceDescriptor
    from .protocols import ResourceKind
    from .value_mapping import FieldValueMapper

logger: logging.Logger = logging.getLogger(__name__)

AGILE_PROCESS_TEMPLATE_ID: Final[str] = "adcc42ab-9882-485e-a3ed-7678f01f66bc"
DASHBOARD_API_VERSION: Final[str] = "7.0-preview.3"

_CONFLICT_MARKERS: Final[tuple[str, ...]] = ("already exist", "already in use")


def encode_path(path: str) -> str:
    """Percent-encode each segment of a slash-separated path, keeping the slashes."""
    return "/".join(encode_segment(segment) for segment in path.split("/") if segment)


def split_path(path: str) -> tuple[str, str]:
    """Split ``a/b/c`` into (``a/b``, ``c``); a single segment has an empty parent."""
    parent, _, leaf = path.strip("/").rpartition("/")
    return parent, leaf


class BaseKind:
    """Defaults shared by all kinds: id from ``data["id"]``, 409 / "already exists" conflicts."""

    resource_type: ClassVar[str] = ""
    conflict_statuses: ClassVar[frozenset[int]] = frozenset({409})
    id_field: ClassVar[str] = "id"

    def project_of(self, descriptor: ResourceDescriptor) -> str:
        parent = descriptor.parent
        if parent is not None and parent.resource_type == "project":
            return parent.natural_key
        project = descriptor.desired_state.get("project")
        if not project:
            msg = f"{self.resource_type} '{descriptor.natural_key}' needs a project (parent handle or desired_state)"
            raise MigrationError(msg)
        return str(project)

    def is_conflict(self, error: PermanentError) -> bool:
        if error.status in self.conflict_statuses:
            return True
        message = error.message.lower()
        return error.status == 400 and any(marker in message for marker in _CONFLICT_MARKERS)

    def handle_from(self, response: ApiResponse, descriptor: ResourceDescriptor, *, existed_before: bool) -> ResourceHandle:
        data: Mapping[str, Any] = response.data if isinstance(response.data, dict) else {}
        return ResourceHandle(
            id=str(data.get(self.id_field, "")),
            natural_key=descriptor.natural_key,
            existed_before=existed_before,
            resource_type=self.resource_type,
            data=data,
        )

    def handle_from_create(self, response: ApiResponse, descriptor: ResourceDescriptor) -> ResourceHandle | None:
        if isinstance(response.data, dict) and response.data.get(self.id_field):
            return self.handle_from(response, descriptor, existed_before=False)
        return None


def _find_by_name(response: ApiResponse, name: str, *, key: str = "name") -> Lookup:
    """Match a listed item by name, case-insensitively as Azure DevOps does."""
    wanted = name.lower()
    for item in response.items():
        if isinstance(item, dict) and str(item.get(key, "")).lower() == wanted:
            return Lookup.of(ApiResponse(status_code=response.status_code, data=item, headers=response.headers))
    return Lookup.absent()


class ProjectKind(BaseKind):
    """Team project. Creation is asynchronous: the create call returns an operation to poll."""

    resource_type: ClassVar[str] = "project"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        return api.probe(f"_apis/projects/{encode_segment(descriptor.natural_key)}")

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        desired = descriptor.desired_state
        body = {
            "name": descriptor.natural_key,
            "description": desired.get("description", ""),
            "visibility": desired.get("visibility", "private"),
            "capabilities": {
                "versioncontrol": {"sourceControlType": "Git"},
                "processTemplate": {"templateTypeId": desired.get("process_template_id", AGILE_PROCESS_TEMPLATE_ID)},
            },
        }
        response = api.post("_apis/projects", body)
        operation_id = response.get("id")
        if operation_id:
            api.wait_for_operation(str(operation_id))
        return response

    def handle_from_create(self, response: ApiResponse, descriptor: ResourceDescriptor) -> ResourceHandle | None:
        # The create response describes the operation, not the project
        return None


class RepositoryKind(BaseKind):
    resource_type: ClassVar[str] = "repository"

    def _base(self, descriptor: ResourceDescriptor) -> str:
        return f"{encode_segment(self.project_of(descriptor))}/_apis/git/repositories"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        return api.probe(f"{self._base(descriptor)}/{encode_segment(descriptor.natural_key)}")

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        body: dict[str, Any] = {"name": descriptor.natural_key}
        if descriptor.parent is not None and descriptor.parent.resource_type == "project":
            body["project"] = {"id": descriptor.parent.id}
        return api.post(self._base(descriptor), body)


class WikiKind(BaseKind):
    """Project wiki, or a code wiki when ``desired_state["type"] == "codeWiki"``."""

    resource_type: ClassVar[str] = "wiki"

    def _base(self, descriptor: ResourceDescriptor) -> str:
        return f"{encode_segment(self.project_of(descriptor))}/_apis/wiki/wikis"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        return api.probe(f"{self._base(descriptor)}/{encode_segment(descriptor.natural_key)}")

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        desired = descriptor.desired_state
        body: dict[str, Any] = {"name": descriptor.natural_key, "type": desired.get("type", "projectWiki")}
        if descriptor.parent is not None and descriptor.parent.resource_type == "project":
            body["projectId"] = descriptor.parent.id
        if body["type"] == "codeWiki":
            if not desired.get("repository_id"):
                msg = f"Code wiki '{descriptor.natural_key}' needs desired_state['repository_id']"
                raise MigrationError(msg)
            body["repositoryId"] = desired["repository_id"]
            body["mappedPath"] = desired.get("mapped_path", "/")
            body["version"] = {"version": desired.get("branch", "main")}
        return api.post(self._base(descriptor), body)


class WikiPageKind(BaseKind):
    """Wiki page addressed by its path; the parent handle is the wiki."""

    resource_type: ClassVar[str] = "wiki_page"
    conflict_statuses: ClassVar[frozenset[int]] = frozenset({409, 412})

    def _pages(self, descriptor: ResourceDescriptor) -> str:
        wiki = descriptor.desired_state.get("wiki")
        if descriptor.parent is not None and descriptor.parent.resource_type == "wiki":
            wiki = descriptor.parent.id
        if not wiki:
            msg = f"wiki_page '{descriptor.natural_key}' needs a wiki (parent handle or desired_state)"
            raise MigrationError(msg)
        return f"{encode_segment(self.project_of(descriptor))}/_apis/wiki/wikis/{encode_segment(str(wiki))}/pages"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        return api.probe(self._pages(descriptor), params={"path": descriptor.natural_key})

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        content = descriptor.desired_state.get("content", "")
        return api.put(self._pages(descriptor), {"content": content}, params={"path": descriptor.natural_key})


class ClassificationNodeKind(BaseKind):
    """Area or iteration path such as ``Team A/Backend``; parent nodes must already exist."""

    structure_group: ClassVar[str] = ""

    def _base(self, descriptor: ResourceDescriptor) -> str:
        return f"{encode_segment(self.project_of(descriptor))}/_apis/wit/classificationnodes/{self.structure_group}"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        return api.probe(f"{self._base(descriptor)}/{encode_path(descriptor.natural_key)}")

    def _body(self, name: str, descriptor: ResourceDescriptor) -> dict[str, Any]:
        return {"name": name}

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        parent_path, leaf = split_path(descriptor.natural_key)
        path = self._base(descriptor)
        if parent_path:
            path = f"{path}/{encode_path(parent_path)}"
        return api.post(path, self._body(leaf, descriptor))


class AreaPathKind(ClassificationNodeKind):
    resource_type: ClassVar[str] = "area_path"
    structure_group: ClassVar[str] = "areas"


class IterationKind(ClassificationNodeKind):
    resource_type: ClassVar[str] = "iteration"
    structure_group: ClassVar[str] = "iterations"

    def _body(self, name: str, descriptor: ResourceDescriptor) -> dict[str, Any]:
        body: dict[str, Any] = {"name": name}
        attributes = {
            key: descriptor.desired_state[source]
            for key, source in (("startDate", "start_date"), ("finishDate", "finish_date"))
            if descriptor.desired_state.get(source)
        }
        if attributes:
            body["attributes"] = attributes
        return body


class QueryKind(BaseKind):
    """Saved query (or folder) at a path like ``Shared Queries/Migration/Open bugs``."""

    resource_type: ClassVar[str] = "query"

    def _base(self, descriptor: ResourceDescriptor) -> str:
        return f"{encode_segment(self.project_of(descriptor))}/_apis/wit/queries"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        return api.probe(f"{self._base(descriptor)}/{encode_path(descriptor.natural_key)}")

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        folder, name = split_path(descriptor.natural_key)
        if not folder:
            msg = f"Query path '{descriptor.natural_key}' must include a parent folder"
            raise MigrationError(msg)
        desired = descriptor.desired_state
        body: dict[str, Any] = {"name": name}
        if desired.get("is_folder"):
            body["isFolder"] = True
        elif desired.get("wiql"):
            body["wiql"] = desired["wiql"]
        else:
            msg = f"Query '{descriptor.natural_key}' needs desired_state['wiql']"
            raise MigrationError(msg)
        return api.post(f"{self._base(descriptor)}/{encode_path(folder)}", body)


class DashboardKind(BaseKind):
    """Team dashboard; Azure DevOps cannot fetch dashboards by name, so CHECK lists and matches."""

    resource_type: ClassVar[str] = "dashboard"

    def _base(self, descriptor: ResourceDescriptor) -> str:
        base = encode_segment(self.project_of(descriptor))
        team = descriptor.desired_state.get("team")
        if team:
            base = f"{base}/{encode_segment(str(team))}"
        return f"{base}/_apis/dashboard/dashboards"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        response = api.get(self._base(descriptor), api_version=DASHBOARD_API_VERSION)
        return _find_by_name(response, descriptor.natural_key)

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        desired = descriptor.desired_state
        body = {
            "name": descriptor.natural_key,
            "description": desired.get("description", ""),
            "widgets": list(desired.get("widgets", [])),
        }
        return api.post(self._base(descriptor), body, api_version=DASHBOARD_API_VERSION)


class WorkItemTypeKind(BaseKind):
    """Custom work item type registered in an inherited process."""

    resource_type: ClassVar[str] = "work_item_type"
    id_field: ClassVar[str] = "referenceName"

    def _base(self, descriptor: ResourceDescriptor) -> str:
        process_id = descriptor.desired_state.get("process_id")
        if not process_id:
            msg = f"work_item_type '{descriptor.natural_key}' needs desired_state['process_id']"
            raise MigrationError(msg)
        return f"_apis/work/processes/{encode_segment(str(process_id))}/workitemtypes"

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        return _find_by_name(api.get(self._base(descriptor)), descriptor.natural_key)

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        desired = descriptor.desired_state
        body: dict[str, Any] = {
            "name": descriptor.natural_key,
            "description": desired.get("description", ""),
            "color": desired.get("color", "009CCC"),
            "icon": desired.get("icon", "icon_clipboard"),
            "isDisabled": False,
        }
        if desired.get("inherits_from"):
            body["inheritsFrom"] = desired["inherits_from"]
        return api.post(self._base(descriptor), body)


def _wiql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class WorkItemKind(BaseKind):
    """Work item identified by type and title within a project.

    Field values are translated through the configured mapping tables, then
    checked against the allowed values of the item's own type before the
    create call. Descriptors without a ``type`` use ``default_type``.
    """

    resource_type: ClassVar[str] = "work_item"

    def __init__(
        self,
        *,
        field_cache: FieldSchemaCache | None = None,
        mapper: FieldValueMapper | None = None,
        validate_fields: frozenset[str] = frozenset(),
        default_type: str = "Task",
    ) -> None:
        self._field_cache: FieldSchemaCache | None = field_cache
        self._mapper: FieldValueMapper | None = mapper
        self._validate_fields: frozenset[str] = validate_fields | (mapper.fields if mapper else frozenset())
        self.default_type: str = default_type

    def _type_of(self, descriptor: ResourceDescriptor) -> str:
        return str(descriptor.desired_state.get("type") or self.default_type)

    def check(self, api: DestinationApi, descriptor: ResourceDescriptor) -> Lookup:
        project = self.project_of(descriptor)
        query = (
            "SELECT [System.Id] FROM WorkItems"
            f" WHERE [System.TeamProject] = {_wiql_literal(project)}"
            f" AND [System.WorkItemType] = {_wiql_literal(self._type_of(descriptor))}"
            f" AND [System.Title] = {_wiql_literal(descriptor.natural_key)}"
            " ORDER BY [System.Id]"
        )
        response = api.post(f"{encode_segment(project)}/_apis/wit/wiql", {"query": query})
        work_items = response.get("workItems") or []
        if not work_items:
            return Lookup.absent()
        if len(work_items) > 1:
            logger.warning(f"{len(work_items)} work items titled '{descriptor.natural_key}'; adopting the oldest")
        return Lookup.of(ApiResponse(status_code=response.status_code, data=work_items[0], headers=response.headers))

    def prepare_fields(self, descriptor: ResourceDescriptor) -> dict[str, Any]:
        """Map and validate the desired field values.

        Raises:
            FieldValueError: If a validated field gets a value outside its allowed domain.
        """
        fields: dict[str, Any] = dict(descriptor.desired_state.get("fields", {}))
        if self._mapper is not None:
            fields = self._mapper.map_fields(fields)
        fields["System.Title"] = descriptor.natural_key

        if self._field_cache is not None:
            work_item_type = self._type_of(descriptor)
            for name, value in fields.items():
                if name in self._validate_fields and isinstance(value, str):
                    if not self._field_cache.is_allowed(name, value, work_item_type):
                        allowed = self._field_cache.get_allowed_values(name, work_item_type)
                        raise FieldValueError(name, value, allowed)
        return fields

    def create(self, api: DestinationApi, descriptor: ResourceDescriptor) -> ApiResponse:
        fields = self.prepare_fields(descriptor)
        patch = [{"op": "add", "path": f"/fields/{name}", "value": value} for name, value in fields.items()]
        project = encode_segment(self.project_of(descriptor))
        work_item_type = encode_segment(self._type_of(descriptor))
        return api.post(
            f"{project}/_apis/wit/workitems/${work_item_type}",
            patch,
            content_type=JSON_PATCH_CONTENT_TYPE,
        )


def default_kinds(
    *,
    field_cache: FieldSchemaCache | None = None,
    mapper: FieldValueMapper | None = None,
    work_item_type: str = "Task",
) -> dict[str, ResourceKind]:
    """One instance of every kind, keyed by resource type."""
    kinds: list[ResourceKind] = [
        ProjectKind(),
        RepositoryKind(),
        WikiKind(),
        WikiPageKind(),
        AreaPathKind(),
        IterationKind(),
        QueryKind(),
        DashboardKind(),
        WorkItemTypeKind(),
        WorkItemKind(field_cache=field_cache, mapper=mapper, default_type=work_item_type),
    ]
    return {kind.resource_type: kind for kind in kinds}
