"""
Organizational structure reads over the meeting graph.

Organizations, departments, ``WORKS_IN`` memberships and ``REPORTS_TO`` edges
are written by ``GraphDatabaseService``; this module assembles them into
hierarchies, chart data, department statistics and colleague lists. Every
read is keyed by an organization domain or a person email.
"""

from typing import Any, Dict, List, Optional

import structlog

from libs.graph.neo4j_client import GraphDatabaseService, get_graph_service

logger = structlog.get_logger(__name__)

DEFAULT_WINDOW_DAYS = 30
COLLABORATION_LIMIT = 20

HIERARCHY = """
MATCH (org:Organization {domain: $domain})
OPTIONAL MATCH (org)-[:HAS_DEPARTMENT]->(dept:Department)
OPTIONAL MATCH (dept)<-[:WORKS_IN]-(person:Person)
OPTIONAL MATCH (person)-[reports:REPORTS_TO]->(manager:Person)
RETURN org, dept, person, manager.email AS managerEmail, properties(reports) AS reports
ORDER BY dept.name, person.name
"""

DEPARTMENT_STATISTICS = """
MATCH (:Organization {domain: $domain})-[:HAS_DEPARTMENT]->(dept:Department {code: $code})
OPTIONAL MATCH (dept)<-[:WORKS_IN]-(person:Person)
OPTIONAL MATCH (person)-[:ATTENDED|ORGANIZED]->(meeting:Meeting)
WHERE meeting.startTime >= datetime() - duration({days: $days})
RETURN dept, count(DISTINCT person) AS totalPeople, count(DISTINCT meeting) AS recentMeetings,
       collect(DISTINCT person.email) AS peopleEmails
"""

COLLEAGUES = """
MATCH (person:Person {email: $email})-[:WORKS_IN]->(dept:Department)
MATCH (colleague:Person)-[:WORKS_IN]->(dept)
WHERE colleague.email <> $email
OPTIONAL MATCH (colleague)-[reports:REPORTS_TO]->(manager:Person)
RETURN colleague, dept AS department, manager, properties(reports) AS reportingRelationship
ORDER BY colleague.name
"""

CROSS_DEPARTMENT = """
MATCH (org:Organization {domain: $domain})-[:HAS_DEPARTMENT]->(dept1:Department)
MATCH (org)-[:HAS_DEPARTMENT]->(dept2:Department)
WHERE dept1.code < dept2.code
MATCH (person1:Person)-[:WORKS_IN]->(dept1)
MATCH (person2:Person)-[:WORKS_IN]->(dept2)
MATCH (person1)-[:ATTENDED|ORGANIZED]->(meeting:Meeting)<-[:ATTENDED|ORGANIZED]-(person2)
WHERE meeting.startTime >= datetime() - duration({days: $days})
RETURN dept1.name AS department1, dept2.name AS department2,
       count(DISTINCT meeting) AS sharedMeetings,
       count(DISTINCT person1) AS people1Count, count(DISTINCT person2) AS people2Count,
       collect(DISTINCT meeting.title)[..5] AS sampleMeetings
ORDER BY sharedMeetings DESC
LIMIT $limit
"""


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].lower()


class OrganizationService:
    """Reads organizational structure out of the graph."""

    def __init__(self, graph: Optional[GraphDatabaseService] = None):
        self._graph = graph

    @property
    def graph(self) -> GraphDatabaseService:
        if self._graph is None:
            self._graph = get_graph_service()
        return self._graph

    async def get_organizational_hierarchy(self, domain: str) -> Dict[str, Any]:
        """Organization, its departments with members, all members and reporting edges."""
        rows = await self.graph.run_read(HIERARCHY, {"domain": domain.lower()})

        organization: Optional[Dict[str, Any]] = None
        departments: Dict[str, Dict[str, Any]] = {}
        people: Dict[str, Dict[str, Any]] = {}
        reporting: List[Dict[str, Any]] = []
        seen_edges = set()

        for row in rows:
            if organization is None and row.get("org"):
                organization = row["org"]

            dept = row.get("dept")
            if dept and dept.get("code") not in departments:
                departments[dept["code"]] = {**dept, "people": []}

            person = row.get("person")
            if not person:
                continue
            people.setdefault(person["email"], person)
            if dept:
                members = departments[dept["code"]]["people"]
                if all(member["email"] != person["email"] for member in members):
                    members.append(person)

            manager_email = row.get("managerEmail")
            if manager_email and (person["email"], manager_email) not in seen_edges:
                seen_edges.add((person["email"], manager_email))
                reporting.append({
                    "reportEmail": person["email"],
                    "managerEmail": manager_email,
                    "relationship": row.get("reports") or {},
                })

        return {
            "organization": organization,
            "departments": list(departments.values()),
            "people": list(people.values()),
            "reportingRelationships": reporting,
        }

    async def prepare_organization_chart_data(self, domain: str) -> Dict[str, List[Dict[str, Any]]]:
        """Nodes and edges for an organization chart."""
        hierarchy = await self.get_organizational_hierarchy(domain)
        nodes: List[Dict[str, Any]] = []
        edges: List[Dict[str, Any]] = []

        organization = hierarchy["organization"]
        if organization:
            nodes.append({
                "id": f"org-{organization['domain']}",
                "label": organization.get("name") or organization["domain"],
                "type": "organization",
                "data": organization,
            })

        for dept in hierarchy["departments"]:
            nodes.append({"id": f"dept-{dept['code']}", "label": dept.get("name"), "type": "department", "data": dept})
            if organization:
                edges.append({"from": f"org-{organization['domain']}", "to": f"dept-{dept['code']}", "type": "has_department"})
            for member in dept["people"]:
                edges.append({"from": f"person-{member['email']}", "to": f"dept-{dept['code']}", "type": "works_in"})

        for person in hierarchy["people"]:
            nodes.append({
                "id": f"person-{person['email']}",
                "label": person.get("name") or person["email"],
                "type": "person",
                "data": person,
            })

        for rel in hierarchy["reportingRelationships"]:
            edges.append({
                "from": f"person-{rel['reportEmail']}",
                "to": f"person-{rel['managerEmail']}",
                "type": "reports_to",
                "data": rel["relationship"],
            })

        return {"nodes": nodes, "edges": edges}

    async def get_department_statistics(
        self, domain: str, code: str, days: int = DEFAULT_WINDOW_DAYS
    ) -> Optional[Dict[str, Any]]:
        """Headcount and recent meeting volume; ``None`` for an unknown department."""
        rows = await self.graph.run_read(DEPARTMENT_STATISTICS, {"domain": domain.lower(), "code": code, "days": days})
        if not rows:
            return None
        row = rows[0]
        return {
            "department": row["dept"],
            "totalPeople": row["totalPeople"],
            "recentMeetings": row["recentMeetings"],
            "peopleEmails": row["peopleEmails"],
        }

    async def find_colleagues(self, email: str) -> List[Dict[str, Any]]:
        return await self.graph.run_read(COLLEAGUES, {"email": email})

    async def get_cross_department_collaboration(
        self, domain: str, days: int = DEFAULT_WINDOW_DAYS
    ) -> List[Dict[str, Any]]:
        rows = await self.graph.run_read(
            CROSS_DEPARTMENT, {"domain": domain.lower(), "days": days, "limit": COLLABORATION_LIMIT}
        )
        logger.debug("Cross-department collaboration", domain=domain, pairs=len(rows))
        return rows


_organization_service: Optional[OrganizationService] = None


def get_organization_service() -> OrganizationService:
    """Get or create the global organization service."""
    global _organization_service
    if _organization_service is None:
        _organization_service = OrganizationService()
    return _organization_service
