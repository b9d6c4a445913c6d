"""Tests for organizational structure reads."""

import pytest

from libs.graph.organization import (
    COLLEAGUES,
    CROSS_DEPARTMENT,
    DEPARTMENT_STATISTICS,
    OrganizationService,
    email_domain,
)

ORG = {"domain": "example.com", "name": "Example"}
ENG = {"code": "ENG", "name": "Engineering"}
SALES = {"code": "SAL", "name": "Sales"}
ALICE = {"email": "alice@example.com", "name": "Alice", "department": "Engineering"}
CAROL = {"email": "carol@example.com", "name": "Carol", "department": "Engineering"}
DAVE = {"email": "dave@example.com", "name": "Dave", "department": "Sales"}

HIERARCHY_ROWS = [
    {"org": ORG, "dept": ENG, "person": ALICE, "managerEmail": None, "reports": None},
    {"org": ORG, "dept": ENG, "person": CAROL, "managerEmail": "alice@example.com", "reports": {"establishedAt": "2024-07-01"}},
    {"org": ORG, "dept": ENG, "person": CAROL, "managerEmail": "alice@example.com", "reports": {"establishedAt": "2024-07-01"}},
    {"org": ORG, "dept": SALES, "person": DAVE, "managerEmail": None, "reports": None},
]


@pytest.fixture
def organizations(mock_graph):
    return OrganizationService(graph=mock_graph)


class TestHierarchy:
    @pytest.mark.asyncio
    async def test_groups_people_by_department(self, organizations, mock_graph):
        mock_graph.run_read.return_value = HIERARCHY_ROWS

        hierarchy = await organizations.get_organizational_hierarchy("Example.com")

        assert mock_graph.run_read.call_args.args[1] == {"domain": "example.com"}
        assert hierarchy["organization"] == ORG
        assert [d["code"] for d in hierarchy["departments"]] == ["ENG", "SAL"]
        assert [p["email"] for p in hierarchy["departments"][0]["people"]] == ["alice@example.com", "carol@example.com"]
        assert len(hierarchy["people"]) == 3
        assert hierarchy["reportingRelationships"] == [{
            "reportEmail": "carol@example.com",
            "managerEmail": "alice@example.com",
            "relationship": {"establishedAt": "2024-07-01"},
        }]

    @pytest.mark.asyncio
    async def test_unknown_organization(self, organizations, mock_graph):
        mock_graph.run_read.return_value = []

        hierarchy = await organizations.get_organizational_hierarchy("nowhere.com")

        assert hierarchy == {"organization": None, "departments": [], "people": [], "reportingRelationships": []}

    @pytest.mark.asyncio
    async def test_chart_data(self, organizations, mock_graph):
        mock_graph.run_read.return_value = HIERARCHY_ROWS

        chart = await organizations.prepare_organization_chart_data("example.com")

        node_ids = {node["id"] for node in chart["nodes"]}
        assert {"org-example.com", "dept-ENG", "dept-SAL", "person-carol@example.com"} <= node_ids
        edges = {(edge["from"], edge["to"], edge["type"]) for edge in chart["edges"]}
        assert ("org-example.com", "dept-ENG", "has_department") in edges
        assert ("person-dave@example.com", "dept-SAL", "works_in") in edges
        assert ("person-carol@example.com", "person-alice@example.com", "reports_to") in edges


class TestDepartmentQueries:
    @pytest.mark.asyncio
    async def test_statistics(self, organizations, mock_graph):
        mock_graph.run_read.return_value = [
            {"dept": ENG, "totalPeople": 2, "recentMeetings": 7, "peopleEmails": ["alice@example.com", "carol@example.com"]}
        ]

        stats = await organizations.get_department_statistics("example.com", "ENG", days=14)

        assert stats["totalPeople"] == 2
        assert stats["recentMeetings"] == 7
        assert mock_graph.run_read.call_args.args == (DEPARTMENT_STATISTICS, {"domain": "example.com", "code": "ENG", "days": 14})

    @pytest.mark.asyncio
    async def test_unknown_department(self, organizations, mock_graph):
        mock_graph.run_read.return_value = []

        assert await organizations.get_department_statistics("example.com", "NOPE") is None

    @pytest.mark.asyncio
    async def test_colleagues_and_collaboration(self, organizations, mock_graph):
        mock_graph.run_read.return_value = []

        await organizations.find_colleagues("carol@example.com")
        assert mock_graph.run_read.call_args.args == (COLLEAGUES, {"email": "carol@example.com"})

        await organizations.get_cross_department_collaboration("example.com", 60)
        query, params = mock_graph.run_read.call_args.args
        assert query == CROSS_DEPARTMENT
        assert params == {"domain": "example.com", "days": 60, "limit": 20}


def test_email_domain():
    assert email_domain("Carol@Example.COM") == "example.com"
