"""
Tests for the request shapes of each destination resource kind.
"""

from __future__ import annotations

import json

import pytest

from gitlab_to_ado_migrator.exceptions import FieldValueError, MigrationError, PermanentError
from gitlab_to_ado_migrator.field_cache import FieldSchemaCache
from gitlab_to_ado_migrator.models import ResourceDescriptor, ResourceHandle, TargetSystem
from gitlab_to_ado_migrator.resources import (
    DASHBOARD_API_VERSION,
    AreaPathKind,
    DashboardKind,
    IterationKind,
    QueryKind,
    WikiKind,
    WikiPageKind,
    WorkItemKind,
    WorkItemTypeKind,
    default_kinds,
    encode_path,
    split_path,
)
from gitlab_to_ado_migrator.value_mapping import FieldValueMapper

PROJECT = ResourceHandle(id="proj-guid", natural_key="Alpha", existed_before=True, resource_type="project")


def _body(spec) -> object:
    return json.loads(spec.body)


@pytest.mark.unit
class TestPathHelpers:
    def test_encode_path_keeps_separators(self) -> None:
        assert encode_path("Team A/Back end") == "Team%20A/Back%20end"

    def test_split_path(self) -> None:
        assert split_path("A/B/C") == ("A/B", "C")
        assert split_path("A") == ("", "A")


@pytest.mark.unit
class TestBaseKind:
    def test_project_from_desired_state(self) -> None:
        kind = AreaPathKind()
        assert kind.project_of(ResourceDescriptor("area_path", "X", {"project": "Beta"})) == "Beta"

    def test_missing_project(self) -> None:
        with pytest.raises(MigrationError, match="needs a project"):
            AreaPathKind().project_of(ResourceDescriptor("area_path", "X"))

    def test_conflict_detection(self) -> None:
        def error(status: int, message: str) -> PermanentError:
            return PermanentError(message, target=TargetSystem.DESTINATION, path="p", status=status)

        kind = AreaPathKind()
        assert kind.is_conflict(error(409, ""))
        assert kind.is_conflict(error(400, "VS402371: Classification node name Backend is already in use"))
        assert not kind.is_conflict(error(400, "invalid name"))
        assert not kind.is_conflict(error(500, "already exists"))

    def test_default_kinds_cover_all_types(self) -> None:
        assert set(default_kinds()) == {
            "project",
            "repository",
            "wiki",
            "wiki_page",
            "area_path",
            "iteration",
            "query",
            "dashboard",
            "work_item_type",
            "work_item",
        }


@pytest.mark.unit
class TestClassificationNodes:
    def test_nested_area_posts_to_parent(self, transport, destination, reply) -> None:
        transport.add(reply(201, {"id": 12}))

        AreaPathKind().create(destination, ResourceDescriptor("area_path", "Team A/Backend", parent=PROJECT))

        spec = transport.sent[0]
        assert spec.path == "Alpha/_apis/wit/classificationnodes/areas/Team%20A"
        assert _body(spec) == {"name": "Backend"}

    def test_top_level_iteration_with_dates(self, transport, destination, reply) -> None:
        transport.add(reply(201, {"id": 3}))
        descriptor = ResourceDescriptor(
            "iteration",
            "Sprint 1",
            {"start_date": "2024-01-01T00:00:00Z", "finish_date": "2024-01-14T00:00:00Z"},
            parent=PROJECT,
        )

        IterationKind().create(destination, descriptor)

        spec = transport.sent[0]
        assert spec.path == "Alpha/_apis/wit/classificationnodes/iterations"
        assert _body(spec) == {
            "name": "Sprint 1",
            "attributes": {"startDate": "2024-01-01T00:00:00Z", "finishDate": "2024-01-14T00:00:00Z"},
        }

    def test_check_probes_full_path(self, transport, destination, reply) -> None:
        transport.add(reply(404))

        assert not AreaPathKind().check(destination, ResourceDescriptor("area_path", "A/B", parent=PROJECT)).found
        assert transport.sent[0].path == "Alpha/_apis/wit/classificationnodes/areas/A/B"


@pytest.mark.unit
class TestWikis:
    def test_project_wiki(self, transport, destination, reply) -> None:
        transport.add(reply(201, {"id": "wiki-1"}))

        WikiKind().create(destination, ResourceDescriptor("wiki", "Alpha.wiki", parent=PROJECT))

        assert _body(transport.sent[0]) == {"name": "Alpha.wiki", "type": "projectWiki", "projectId": "proj-guid"}

    def test_code_wiki_requires_repository(self, destination) -> None:
        descriptor = ResourceDescriptor("wiki", "docs", {"type": "codeWiki"}, parent=PROJECT)

        with pytest.raises(MigrationError, match="repository_id"):
            WikiKind().create(destination, descriptor)

    def test_page_uses_wiki_parent(self, transport, destination, reply) -> None:
        wiki = ResourceHandle(id="wiki-1", natural_key="Alpha.wiki", existed_before=False, resource_type="wiki")
        descriptor = ResourceDescriptor("wiki_page", "/Home", {"project": "Alpha", "content": "# Hi"}, parent=wiki)
        transport.add(reply(201, {"id": 1, "path": "/Home"}))

        WikiPageKind().create(destination, descriptor)

        spec = transport.sent[0]
        assert spec.method == "PUT"
        assert spec.path == "Alpha/_apis/wiki/wikis/wiki-1/pages"
        assert spec.params == {"path": "/Home"}
        assert _body(spec) == {"content": "# Hi"}

    def test_page_precondition_failure_is_conflict(self) -> None:
        error = PermanentError("exists", target=TargetSystem.DESTINATION, path="p", status=412)
        assert WikiPageKind().is_conflict(error)


@pytest.mark.unit
class TestQueriesAndDashboards:
    def test_query_posts_into_folder(self, transport, destination, reply) -> None:
        transport.add(reply(201, {"id": "q-1"}))
        descriptor = ResourceDescriptor(
            "query", "Shared Queries/Migration/Open", {"wiql": "SELECT [System.Id] FROM WorkItems"}, parent=PROJECT
        )

        QueryKind().create(destination, descriptor)

        spec = transport.sent[0]
        assert spec.path == "Alpha/_apis/wit/queries/Shared%20Queries/Migration"
        assert _body(spec) == {"name": "Open", "wiql": "SELECT [System.Id] FROM WorkItems"}

    def test_query_folder(self, transport, destination, reply) -> None:
        transport.add(reply(201, {"id": "f-1"}))

        QueryKind().create(
            destination, ResourceDescriptor("query", "Shared Queries/Migration", {"is_folder": True}, parent=PROJECT)
        )

        assert _body(transport.sent[0]) == {"name": "Migration", "isFolder": True}

    def test_query_without_folder_or_wiql(self, destination) -> None:
        with pytest.raises(MigrationError, match="parent folder"):
            QueryKind().create(destination, ResourceDescriptor("query", "Lonely", {"wiql": "x"}, parent=PROJECT))
        with pytest.raises(MigrationError, match="wiql"):
            QueryKind().create(destination, ResourceDescriptor("query", "Shared Queries/Q", parent=PROJECT))

    def test_dashboard_check_matches_by_name(self, transport, destination, reply) -> None:
        transport.add(reply(200, {"value": [{"id": "d-1", "name": "Overview"}, {"id": "d-2", "name": "Migration"}]}))

        lookup = DashboardKind().check(
            destination, ResourceDescriptor("dashboard", "migration", {"team": "Alpha Team"}, parent=PROJECT)
        )

        assert lookup.found
        assert lookup.response is not None
        assert lookup.response.get("id") == "d-2"
        spec = transport.sent[0]
        assert spec.path == "Alpha/Alpha%20Team/_apis/dashboard/dashboards"
        assert spec.api_version == DASHBOARD_API_VERSION


@pytest.mark.unit
class TestWorkItemTypes:
    def test_requires_process(self, destination) -> None:
        with pytest.raises(MigrationError, match="process_id"):
            WorkItemTypeKind().check(destination, ResourceDescriptor("work_item_type", "Risk"))

    def test_handle_uses_reference_name(self, transport, destination, reply) -> None:
        transport.add(reply(200, {"value": [{"name": "Risk", "referenceName": "Custom.Risk"}]}))
        descriptor = ResourceDescriptor("work_item_type", "Risk", {"process_id": "proc-1"})
        kind = WorkItemTypeKind()

        lookup = kind.check(destination, descriptor)

        assert lookup.response is not None
        assert kind.handle_from(lookup.response, descriptor, existed_before=True).id == "Custom.Risk"
        assert transport.sent[0].path == "_apis/work/processes/proc-1/workitemtypes"


@pytest.mark.unit
class TestWorkItems:
    def _descriptor(self, title: str = "Fix login", **fields: str) -> ResourceDescriptor:
        return ResourceDescriptor("work_item", title, {"type": "Bug", "fields": fields}, parent=PROJECT)

    def test_check_escapes_title(self, transport, destination, reply) -> None:
        transport.add(reply(200, {"workItems": []}))

        assert not WorkItemKind().check(destination, self._descriptor("Don't panic")).found

        spec = transport.sent[0]
        assert spec.method == "POST"
        assert spec.path == "Alpha/_apis/wit/wiql"
        assert "[System.Title] = 'Don''t panic'" in _body(spec)["query"]

    def test_check_adopts_oldest_match(self, transport, destination, reply) -> None:
        transport.add(reply(200, {"workItems": [{"id": 7, "url": "u7"}, {"id": 9, "url": "u9"}]}))

        lookup = WorkItemKind().check(destination, self._descriptor())

        assert lookup.response is not None
        assert lookup.response.get("id") == 7

    def test_create_maps_and_validates_fields(self, transport, destination, reply) -> None:
        cache = FieldSchemaCache(destination, "Alpha")
        kind = WorkItemKind(field_cache=cache, mapper=FieldValueMapper({"Custom.Risk": {"High": "1 - High"}}))
        transport.add(
            reply(200, {"allowedValues": ["1 - High", "2 - Low"]}),
            reply(200, {"id": 42}),
        )

        kind.create(destination, self._descriptor(**{"Custom.Risk": "High"}))

        spec = transport.sent[1]
        assert spec.path == "Alpha/_apis/wit/workitems/$Bug"
        assert spec.content_type == "application/json-patch+json"
        assert _body(spec) == [
            {"op": "add", "path": "/fields/Custom.Risk", "value": "1 - High"},
            {"op": "add", "path": "/fields/System.Title", "value": "Fix login"},
        ]

    def test_invalid_value_rejected_before_create(self, transport, destination, reply) -> None:
        cache = FieldSchemaCache(destination, "Alpha")
        kind = WorkItemKind(field_cache=cache, validate_fields=frozenset({"Custom.Risk"}))
        transport.add(reply(200, {"allowedValues": ["1 - High", "2 - Low"]}))

        with pytest.raises(FieldValueError) as exc_info:
            kind.create(destination, self._descriptor(**{"Custom.Risk": "Extreme"}))

        assert exc_info.value.field_name == "Custom.Risk"
        assert exc_info.value.allowed == frozenset({"1 - High", "2 - Low"})
        assert len(transport.sent) == 1

    def test_schema_fetched_once_for_many_items(self, transport, destination, reply) -> None:
        cache = FieldSchemaCache(destination, "Alpha")
        kind = WorkItemKind(field_cache=cache, validate_fields=frozenset({"Custom.Risk"}))
        transport.add(reply(200, {"allowedValues": ["Low"]}))

        for n in range(3):
            kind.prepare_fields(self._descriptor(f"Item {n}", **{"Custom.Risk": "Low"}))

        assert cache.lookups == 1

    def test_fields_validated_against_item_type_schema(self, transport, destination, reply) -> None:
        cache = FieldSchemaCache(destination, "Alpha")
        mapper = FieldValueMapper({"Microsoft.VSTS.Common.Severity": {"critical": "1 - Critical"}})
        kind = WorkItemKind(field_cache=cache, mapper=mapper)
        transport.add(
            reply(200, {"allowedValues": ["1 - Critical", "2 - High"]}),
            reply(200, {"id": 51}),
        )

        kind.create(destination, self._descriptor("Crash", **{"Microsoft.VSTS.Common.Severity": "critical"}))

        assert "/workitemtypes/Bug/" in transport.sent[0].path
        assert transport.sent[0].path.endswith("/fields/Microsoft.VSTS.Common.Severity")
        assert transport.sent[1].path == "Alpha/_apis/wit/workitems/$Bug"

    def test_type_defaults_to_configured_type(self, transport, destination, reply) -> None:
        cache = FieldSchemaCache(destination, "Alpha", work_item_type="User Story")
        kind = WorkItemKind(field_cache=cache, validate_fields=frozenset({"Custom.Risk"}), default_type="User Story")
        descriptor = ResourceDescriptor("work_item", "Onboarding", {"fields": {"Custom.Risk": "Low"}}, parent=PROJECT)
        transport.add(reply(200, {"allowedValues": ["Low"]}), reply(200, {"id": 52}))

        kind.create(destination, descriptor)

        assert transport.sent[0].path.startswith("Alpha/_apis/wit/workitemtypes/User%20Story/")
        assert transport.sent[1].path == "Alpha/_apis/wit/workitems/$User%20Story"

    def test_default_kinds_pass_work_item_type(self) -> None:
        kind = default_kinds(work_item_type="Issue")["work_item"]

        assert isinstance(kind, WorkItemKind)
        assert kind.default_type == "Issue"
