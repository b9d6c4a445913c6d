"""Tests for the Neo4j graph store wrapper."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from neo4j.exceptions import ServiceUnavailable
from neo4j.time import DateTime

from libs.graph.neo4j_client import (
    ASSIGN_DEPARTMENT,
    CONSTRAINTS,
    LINK_ATTENDEES,
    LINK_DOCUMENT,
    LINK_ORGANIZER,
    REPORTS_TO,
    UPSERT_DEPARTMENT,
    UPSERT_MEETING,
    GraphDatabaseService,
    to_native,
)

MEETING = {
    "googleEventId": "e1",
    "title": "Budget review",
    "startTime": "2024-07-01T10:00:00Z",
    "endTime": "2024-07-01T11:00:00Z",
    "organizer": {"email": "bob@example.com", "name": "Bob"},
    "attendees": [
        {"email": "alice@example.com", "name": "Alice", "responseStatus": "accepted"},
        {"name": "No email"},
    ],
}


@pytest.fixture
def service():
    return GraphDatabaseService(uri="bolt://test:7687", user="neo4j", password="secret", driver=MagicMock())


class TestCreateMeeting:
    @pytest.mark.asyncio
    async def test_upserts_and_links_people(self, service):
        with patch.object(service, "run_write", AsyncMock(side_effect=[[{"m": {"id": "m-1", "title": "Budget review"}}], [], []])) as run_write:
            node = await service.create_meeting(MEETING)

        assert node == {"id": "m-1", "title": "Budget review"}
        queries = [call.args[0] for call in run_write.call_args_list]
        assert queries == [UPSERT_MEETING, LINK_ORGANIZER, LINK_ATTENDEES]
        upsert_params = run_write.call_args_list[0].args[1]
        assert upsert_params["googleEventId"] == "e1"
        assert upsert_params["id"]
        attendee_params = run_write.call_args_list[2].args[1]
        assert attendee_params == {
            "meetingId": "m-1",
            "attendees": [{"email": "alice@example.com", "name": "Alice", "responseStatus": "accepted"}],
        }

    @pytest.mark.asyncio
    async def test_no_node_skips_links(self, service):
        with patch.object(service, "run_write", AsyncMock(return_value=[])) as run_write:
            assert await service.create_meeting(MEETING) == {}

        assert run_write.call_count == 1

    @pytest.mark.asyncio
    async def test_link_document(self, service):
        with patch.object(service, "run_write", AsyncMock(return_value=[])) as run_write:
            await service.link_meeting_to_document("m-1", "f1")

        run_write.assert_awaited_once_with(LINK_DOCUMENT, {"meetingId": "m-1", "documentId": "f1"})


class TestOrganizationWrites:
    @pytest.mark.asyncio
    async def test_create_department_passes_parent_and_lowercases_domain(self, service):
        with patch.object(service, "run_write", AsyncMock(return_value=[{"dept": {"code": "ENG", "name": "Engineering"}}])) as run_write:
            dept = await service.create_department(
                {"code": "ENG", "name": "Engineering", "organizationDomain": "Example.com", "parentDepartmentCode": "RND"}
            )

        assert dept == {"code": "ENG", "name": "Engineering"}
        query, params = run_write.call_args.args
        assert query == UPSERT_DEPARTMENT
        assert params["organizationDomain"] == "example.com"
        assert params["parentDepartmentCode"] == "RND"

    @pytest.mark.asyncio
    async def test_create_department_unknown_organization(self, service):
        with patch.object(service, "run_write", AsyncMock(return_value=[])):
            assert await service.create_department({"code": "ENG", "organizationDomain": "nowhere.com"}) == {}

    @pytest.mark.asyncio
    async def test_assignment_sets_person_department(self, service):
        record = {
            "p": {"email": "carol@example.com", "department": "Engineering"},
            "r": {"role": "Staff Engineer", "isManager": False},
            "dept": {"code": "ENG", "name": "Engineering"},
        }
        with patch.object(service, "run_write", AsyncMock(return_value=[record])) as run_write:
            result = await service.assign_person_to_department("carol@example.com", "ENG", "Staff Engineer")

        assert result == {"person": record["p"], "relationship": record["r"], "department": record["dept"]}
        query, params = run_write.call_args.args
        assert query == ASSIGN_DEPARTMENT
        assert "p.department = dept.name" in query
        assert params == {"email": "carol@example.com", "departmentCode": "ENG", "role": "Staff Engineer", "isManager": False}

    @pytest.mark.asyncio
    async def test_missing_nodes_return_none(self, service):
        with patch.object(service, "run_write", AsyncMock(return_value=[])) as run_write:
            assert await service.assign_person_to_department("ghost@example.com", "ENG") is None
            assert await service.create_reporting_relationship("bob@example.com", "ghost@example.com") is None

        assert run_write.call_args.args == (REPORTS_TO, {"managerEmail": "bob@example.com", "reportEmail": "ghost@example.com"})


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_creates_constraints_once(self, service):
        service.driver.verify_connectivity = AsyncMock()
        with patch.object(service, "run_write", AsyncMock(return_value=[])) as run_write:
            await service.initialize()
            await service.initialize()

        service.driver.verify_connectivity.assert_awaited_once()
        assert run_write.call_count == len(CONSTRAINTS)

    @pytest.mark.asyncio
    async def test_health_check(self, service):
        service.driver.verify_connectivity = AsyncMock(side_effect=ServiceUnavailable("down"))

        assert await service.health_check() is False

    @pytest.mark.asyncio
    async def test_close(self, service):
        driver = service.driver
        driver.close = AsyncMock()

        await service.close()

        driver.close.assert_awaited_once()


class TestToNative:
    def test_converts_temporal_values(self):
        value = DateTime.from_native(datetime(2024, 7, 1, 10, 0, tzinfo=timezone.utc))

        converted = to_native({"startTime": value, "attendees": [{"at": value}], "n": 1})

        assert converted["startTime"].startswith("2024-07-01T10:00:00")
        assert converted["attendees"][0]["at"] == converted["startTime"]
        assert converted["n"] == 1
