"""
Async Neo4j access for the meeting graph.

Nodes: ``Person`` (keyed by email), ``Meeting`` (keyed by googleEventId, with
a generated ``id``), ``Document`` (keyed by id), ``Organization`` (keyed by
domain) and ``Department`` (keyed by code). Relationships: ``ORGANIZED``,
``ATTENDED``, ``HAS_DOCUMENT``, ``HAS_DEPARTMENT``, ``HAS_SUBDEPARTMENT``,
``WORKS_IN`` and ``REPORTS_TO``. All upserts are idempotent ``MERGE``s.

Assigning a person to a department also copies the department name and role
onto the ``Person`` node, which is what the department filters of the graph
tools match on.
"""

import uuid
from typing import Any, Dict, List, Optional

import structlog
from neo4j import AsyncDriver, AsyncGraphDatabase
from neo4j.exceptions import Neo4jError, ServiceUnavailable

from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

CONSTRAINTS = [
    "CREATE CONSTRAINT person_email IF NOT EXISTS FOR (p:Person) REQUIRE p.email IS UNIQUE",
    "CREATE CONSTRAINT meeting_event_id IF NOT EXISTS FOR (m:Meeting) REQUIRE m.googleEventId IS UNIQUE",
    "CREATE CONSTRAINT meeting_id IF NOT EXISTS FOR (m:Meeting) REQUIRE m.id IS UNIQUE",
    "CREATE CONSTRAINT document_id IF NOT EXISTS FOR (d:Document) REQUIRE d.id IS UNIQUE",
    "CREATE CONSTRAINT organization_domain IF NOT EXISTS FOR (o:Organization) REQUIRE o.domain IS UNIQUE",
    "CREATE CONSTRAINT department_code IF NOT EXISTS FOR (d:Department) REQUIRE d.code IS UNIQUE",
    "CREATE INDEX meeting_start IF NOT EXISTS FOR (m:Meeting) ON (m.startTime)",
]

UPSERT_PERSON = """
MERGE (p:Person {email: $email})
ON CREATE SET p.id = $id, p.name = $name, p.photoUrl = $photoUrl, p.createdAt = datetime()
ON MATCH SET p.name = coalesce($name, p.name), p.photoUrl = coalesce($photoUrl, p.photoUrl),
             p.updatedAt = datetime()
RETURN p
"""

UPSERT_MEETING = """
MERGE (m:Meeting {googleEventId: $googleEventId})
ON CREATE SET m.id = $id, m.createdAt = datetime()
SET m.title = $title,
    m.description = $description,
    m.startTime = datetime($startTime),
    m.endTime = datetime($endTime),
    m.location = $location,
    m.hangoutLink = $hangoutLink,
    m.htmlLink = $htmlLink,
    m.updatedAt = datetime()
RETURN m
"""

LINK_ORGANIZER = """
MATCH (m:Meeting {id: $meetingId})
MERGE (p:Person {email: $email})
ON CREATE SET p.id = randomUUID(), p.name = $name, p.createdAt = datetime()
MERGE (p)-[r:ORGANIZED]->(m)
ON CREATE SET r.createdAt = datetime()
"""

LINK_ATTENDEES = """
MATCH (m:Meeting {id: $meetingId})
UNWIND $attendees AS attendee
MERGE (p:Person {email: attendee.email})
ON CREATE SET p.id = randomUUID(), p.name = attendee.name, p.createdAt = datetime()
MERGE (p)-[r:ATTENDED]->(m)
ON CREATE SET r.createdAt = datetime()
SET r.responseStatus = attendee.responseStatus
"""

UPSERT_DOCUMENT = """
MERGE (d:Document {id: $id})
ON CREATE SET d.createdAt = datetime()
SET d.title = $title, d.url = $url, d.mimeType = $mimeType, d.updatedAt = datetime()
RETURN d
"""

LINK_DOCUMENT = """
MATCH (m:Meeting {id: $meetingId})
MATCH (d:Document {id: $documentId})
MERGE (m)-[r:HAS_DOCUMENT]->(d)
ON CREATE SET r.createdAt = datetime()
"""


UPSERT_ORGANIZATION = """
MERGE (org:Organization {domain: $domain})
ON CREATE SET org.createdAt = datetime()
SET org.name = $name, org.description = $description, org.industry = $industry, org.updatedAt = datetime()
RETURN org
"""

UPSERT_DEPARTMENT = """
MATCH (org:Organization {domain: $organizationDomain})
MERGE (dept:Department {code: $code})
ON CREATE SET dept.createdAt = datetime()
SET dept.name = $name, dept.description = $description, dept.updatedAt = datetime()
MERGE (org)-[:HAS_DEPARTMENT]->(dept)
WITH dept
OPTIONAL MATCH (parent:Department {code: $parentDepartmentCode})
FOREACH (_ IN CASE WHEN parent IS NULL THEN [] ELSE [1] END | MERGE (parent)-[:HAS_SUBDEPARTMENT]->(dept))
RETURN dept
"""

ASSIGN_DEPARTMENT = """
MATCH (p:Person {email: $email})
MATCH (dept:Department {code: $departmentCode})
OPTIONAL MATCH (p)-[old:WORKS_IN]->(other:Department)
WHERE other.code <> $departmentCode
DELETE old
WITH DISTINCT p, dept
MERGE (p)-[r:WORKS_IN]->(dept)
SET r.role = $role, r.isManager = $isManager, r.assignedAt = datetime(),
    p.department = dept.name, p.title = coalesce($role, p.title)
RETURN p, properties(r) AS r, dept
"""

REPORTS_TO = """
MATCH (manager:Person {email: $managerEmail})
MATCH (report:Person {email: $reportEmail})
MERGE (report)-[r:REPORTS_TO]->(manager)
ON CREATE SET r.establishedAt = datetime()
RETURN manager, properties(r) AS r, report
"""

def to_native(value: Any) -> Any:
    """Convert neo4j temporal values (recursively) to ISO strings."""
    if isinstance(value, dict):
        return {key: to_native(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_native(item) for item in value]
    if hasattr(value, "iso_format"):
        return value.iso_format()
    return value


class GraphDatabaseService:
    """Thin async wrapper over the Neo4j driver."""

    def __init__(
        self,
        uri: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        database: Optional[str] = None,
        driver: Optional[AsyncDriver] = None,
    ):
        settings = get_settings()
        self.uri = uri or settings.neo4j_uri
        self.user = user or settings.neo4j_user
        self.password = password or settings.neo4j_password
        self.database = database or settings.neo4j_database
        self._driver = driver
        self._initialized = False

    @property
    def driver(self) -> AsyncDriver:
        if self._driver is None:
            self._driver = AsyncGraphDatabase.driver(
                self.uri,
                auth=(self.user, self.password),
                max_connection_lifetime=3600,
                max_connection_pool_size=50,
                connection_acquisition_timeout=30,
            )
        return self._driver

    async def initialize(self) -> None:
        """Verify connectivity and create constraints. Idempotent."""
        if self._initialized:
            return
        try:
            await self.driver.verify_connectivity()
            for statement in CONSTRAINTS:
                await self.run_write(statement)
        except ServiceUnavailable as e:
            logger.error("Neo4j unavailable", uri=self.uri, error=str(e))
            raise
        self._initialized = True
        logger.info("Neo4j initialized", uri=self.uri, database=self.database)

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None
            self._initialized = False
            logger.info("Neo4j connection closed")

    async def health_check(self) -> bool:
        try:
            await self.driver.verify_connectivity()
            return True
        except (Neo4jError, ServiceUnavailable, OSError) as e:
            logger.warning("Neo4j health check failed", error=str(e))
            return False

    async def run_read(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        async def work(tx):
            result = await tx.run(query, parameters or {})
            return await result.data()

        async with self.driver.session(database=self.database) as session:
            records = await session.execute_read(work)
        return [to_native(record) for record in records]

    async def run_write(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        async def work(tx):
            result = await tx.run(query, parameters or {})
            return await result.data()

        async with self.driver.session(database=self.database) as session:
            records = await session.execute_write(work)
        return [to_native(record) for record in records]

    async def create_person(self, person: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert a person by email."""
        records = await self.run_write(UPSERT_PERSON, {
            "id": person.get("id") or str(uuid.uuid4()),
            "email": person["email"],
            "name": person.get("name"),
            "photoUrl": person.get("photoUrl"),
        })
        return records[0]["p"] if records else {}

    async def create_meeting(self, meeting: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert a meeting by googleEventId and link its organizer and attendees."""
        records = await self.run_write(UPSERT_MEETING, {
            "id": meeting.get("id") or str(uuid.uuid4()),
            "googleEventId": meeting["googleEventId"],
            "title": meeting.get("title") or "",
            "description": meeting.get("description") or "",
            "startTime": meeting.get("startTime"),
            "endTime": meeting.get("endTime"),
            "location": meeting.get("location") or "",
            "hangoutLink": meeting.get("hangoutLink"),
            "htmlLink": meeting.get("htmlLink"),
        })
        node = records[0]["m"] if records else {}
        meeting_id = node.get("id")
        if not meeting_id:
            return node

        organizer = meeting.get("organizer") or {}
        if organizer.get("email"):
            await self.run_write(LINK_ORGANIZER, {
                "meetingId": meeting_id,
                "email": organizer["email"],
                "name": organizer.get("name"),
            })

        attendees = [
            {
                "email": attendee["email"],
                "name": attendee.get("name"),
                "responseStatus": attendee.get("responseStatus"),
            }
            for attendee in meeting.get("attendees") or []
            if attendee.get("email")
        ]
        if attendees:
            await self.run_write(LINK_ATTENDEES, {"meetingId": meeting_id, "attendees": attendees})

        return node

    async def create_document(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert a document by id."""
        records = await self.run_write(UPSERT_DOCUMENT, {
            "id": document["id"],
            "title": document.get("title") or "",
            "url": document.get("url"),
            "mimeType": document.get("mimeType"),
        })
        return records[0]["d"] if records else {}

    async def link_meeting_to_document(self, meeting_id: str, document_id: str) -> None:
        await self.run_write(LINK_DOCUMENT, {"meetingId": meeting_id, "documentId": document_id})

    async def create_organization(self, organization: Dict[str, Any]) -> Dict[str, Any]:
        """Upsert an organization by domain."""
        records = await self.run_write(UPSERT_ORGANIZATION, {
            "domain": organization["domain"].lower(),
            "name": organization.get("name") or organization["domain"],
            "description": organization.get("description"),
            "industry": organization.get("industry"),
        })
        return records[0]["org"] if records else {}

    async def create_department(self, department: Dict[str, Any]) -> Dict[str, Any]:
        """
        Upsert a department under its organization.

        Returns an empty dict when the organization does not exist. An unknown
        parent department is ignored.
        """
        records = await self.run_write(UPSERT_DEPARTMENT, {
            "code": department["code"],
            "name": department.get("name") or department["code"],
            "description": department.get("description"),
            "organizationDomain": department["organizationDomain"].lower(),
            "parentDepartmentCode": department.get("parentDepartmentCode"),
        })
        return records[0]["dept"] if records else {}

    async def assign_person_to_department(
        self,
        email: str,
        department_code: str,
        role: Optional[str] = None,
        is_manager: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Move a person into a department. ``None`` when either node is missing."""
        records = await self.run_write(ASSIGN_DEPARTMENT, {
            "email": email,
            "departmentCode": department_code,
            "role": role,
            "isManager": is_manager,
        })
        if not records:
            return None
        record = records[0]
        return {"person": record["p"], "relationship": record["r"], "department": record["dept"]}

    async def create_reporting_relationship(self, manager_email: str, report_email: str) -> Optional[Dict[str, Any]]:
        records = await self.run_write(REPORTS_TO, {"managerEmail": manager_email, "reportEmail": report_email})
        if not records:
            return None
        record = records[0]
        return {"manager": record["manager"], "relationship": record["r"], "report": record["report"]}


_graph_service: Optional[GraphDatabaseService] = None


def get_graph_service() -> GraphDatabaseService:
    """Get or create the global graph database service."""
    global _graph_service
    if _graph_service is None:
        _graph_service = GraphDatabaseService()
    return _graph_service
