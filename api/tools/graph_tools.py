"""
Graph query capability: executes one typed strategy step against Neo4j.

``GraphQueryService`` dispatches each ``QueryType`` to a handler through a
table that must cover the whole enum (checked at construction), so a new
query type cannot be added without a handler. Every handler returns
``{"results": [...]}`` with JSON-friendly rows.
"""

import calendar
import re
from collections import Counter
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import structlog

from api.schemas.strategy import QueryType
from libs.graph.neo4j_client import GraphDatabaseService, get_graph_service

logger = structlog.get_logger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200
RECENT_DAYS = 30

MONTHS = {name.lower(): index for index, name in enumerate(calendar.month_name) if name}

TOPIC_STOPWORDS = frozenset({
    "a", "an", "and", "the", "of", "for", "with", "to", "in", "on", "at", "by", "re", "fw", "fwd",
    "meeting", "call", "sync", "chat", "catch", "up", "w", "vs", "our", "my", "your", "invitation",
})

TOOL_CATALOG: Dict[QueryType, Dict[str, Any]] = {
    QueryType.FIND_MEETINGS: {
        "description": "Find meetings in a time window, optionally by participant or keyword",
        "parameters": ["timeframe", "startDate", "endDate", "participantEmail", "keyword", "meetingIds", "limit"],
    },
    QueryType.GET_PARTICIPANTS: {
        "description": "Find people who attended meetings",
        "parameters": ["meetingIds", "emailDomain", "department", "timeframe", "limit"],
    },
    QueryType.FIND_DOCUMENTS: {
        "description": "Find documents attached to meetings",
        "parameters": ["meetingIds", "keyword", "timeframe", "limit"],
    },
    QueryType.ANALYZE_RELATIONSHIPS: {
        "description": "People a person shares meetings with",
        "parameters": ["personEmail", "timeframe", "limit"],
    },
    QueryType.GENERAL_QUERY: {
        "description": "Recent meetings for the user, optionally by keyword",
        "parameters": ["keyword", "limit"],
    },
    QueryType.ANALYZE_COLLABORATION: {
        "description": "Pairs of people who meet together and how often",
        "parameters": ["timeframe", "department", "participantEmails", "limit"],
    },
    QueryType.FIND_FREQUENT_COLLABORATORS: {
        "description": "The user's most frequent co-attendees",
        "parameters": ["timeframe", "limit"],
    },
    QueryType.ANALYZE_MEETING_PATTERNS: {
        "description": "Meeting counts by weekday and hour",
        "parameters": ["timeframe"],
    },
    QueryType.GET_DEPARTMENT_INSIGHTS: {
        "description": "People and meeting counts per department",
        "parameters": ["department", "timeframe"],
    },
    QueryType.ANALYZE_TOPIC_TRENDS: {
        "description": "Most frequent words in meeting titles",
        "parameters": ["timeframe", "limit"],
    },
    QueryType.FIND_MEETING_CONFLICTS: {
        "description": "Overlapping meetings on the user's calendar",
        "parameters": ["timeframe"],
    },
    QueryType.GET_PRODUCTIVITY_INSIGHTS: {
        "description": "Meeting count and meeting hours per week",
        "parameters": ["timeframe"],
    },
    QueryType.ANALYZE_COMMUNICATION_FLOW: {
        "description": "Organizer to attendee flow between people",
        "parameters": ["timeframe", "limit"],
    },
}


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    return value.replace(year=value.year + month_index // 12, month=month_index % 12 + 1, day=1)


def parse_timeframe(timeframe: Any, now: Optional[datetime] = None) -> Optional[Tuple[str, str]]:
    """
    Resolve a timeframe keyword to an ISO ``(start, end)`` window, end exclusive.

    Supported: today, tomorrow, yesterday, this_week, last_week, next_week,
    this_month, last_month, recent (last 30 days), month names (current
    year) and ISO dates. Unknown values return ``None``.
    """
    if not isinstance(timeframe, str) or not timeframe.strip():
        return None
    now = now or datetime.now(timezone.utc)
    today = _start_of_day(now)
    key = timeframe.strip().lower().replace(" ", "_")

    try:
        day = date.fromisoformat(timeframe.strip()[:10])
    except ValueError:
        day = None
    if day is not None:
        start = datetime(day.year, day.month, day.day, tzinfo=now.tzinfo)
        return start.isoformat(), (start + timedelta(days=1)).isoformat()

    week_start = today - timedelta(days=today.weekday())
    month_start = today.replace(day=1)

    windows = {
        "today": (today, today + timedelta(days=1)),
        "tomorrow": (today + timedelta(days=1), today + timedelta(days=2)),
        "yesterday": (today - timedelta(days=1), today),
        "this_week": (week_start, week_start + timedelta(days=7)),
        "last_week": (week_start - timedelta(days=7), week_start),
        "next_week": (week_start + timedelta(days=7), week_start + timedelta(days=14)),
        "this_month": (month_start, _add_months(month_start, 1)),
        "last_month": (_add_months(month_start, -1), month_start),
        "recent": (now - timedelta(days=RECENT_DAYS), now),
    }
    if key in windows:
        start, end = windows[key]
        return start.isoformat(), end.isoformat()

    if key in MONTHS:
        start = month_start.replace(month=MONTHS[key])
        return start.isoformat(), _add_months(start, 1).isoformat()

    logger.debug("Unrecognized timeframe", timeframe=timeframe)
    return None


def _limit(parameters: Dict[str, Any], default: int = DEFAULT_LIMIT) -> int:
    try:
        value = int(parameters.get("limit", default))
    except (TypeError, ValueError):
        value = default
    return max(1, min(value, MAX_LIMIT))


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value if item]
    return []


class CypherFilter:
    """Collects WHERE conditions and their parameters."""

    def __init__(self):
        self.conditions: List[str] = []
        self.params: Dict[str, Any] = {}

    def add(self, condition: str, **params: Any) -> None:
        self.conditions.append(condition)
        self.params.update(params)

    def time_window(self, alias: str, parameters: Dict[str, Any], now: Optional[datetime] = None) -> None:
        start = parameters.get("startDate")
        end = parameters.get("endDate")
        window = parse_timeframe(parameters.get("timeframe"), now) if not start else None
        if window:
            start, end = window
        if start:
            self.add(f"{alias}.startTime >= datetime($start)", start=start)
        if end:
            self.add(f"{alias}.startTime < datetime($end)", end=end)

    def where(self) -> str:
        return f"WHERE {' AND '.join(self.conditions)}" if self.conditions else ""


MEETING_PROJECTION = """
OPTIONAL MATCH (organizer:Person)-[:ORGANIZED]->(m)
OPTIONAL MATCH (attendee:Person)-[:ATTENDED]->(m)
WITH m, organizer, collect(DISTINCT {email: attendee.email, name: attendee.name}) AS attendees
RETURN m.id AS id, m.googleEventId AS googleEventId, m.title AS title, m.description AS description,
       m.startTime AS startTime, m.endTime AS endTime, m.location AS location,
       CASE WHEN organizer IS NULL THEN null ELSE {email: organizer.email, name: organizer.name} END AS organizer,
       [a IN attendees WHERE a.email IS NOT NULL] AS attendees
ORDER BY m.startTime DESC
LIMIT $limit
"""

Handler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[List[Dict[str, Any]]]]


class GraphQueryService:
    """Executes typed graph queries on behalf of strategy steps."""

    def __init__(
        self,
        graph: Optional[GraphDatabaseService] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._graph = graph
        self.clock = clock
        self._handlers: Dict[QueryType, Handler] = {
            QueryType.FIND_MEETINGS: self.find_meetings,
            QueryType.GET_PARTICIPANTS: self.get_participants,
            QueryType.FIND_DOCUMENTS: self.find_documents,
            QueryType.ANALYZE_RELATIONSHIPS: self.analyze_relationships,
            QueryType.GENERAL_QUERY: self.general_query,
            QueryType.ANALYZE_COLLABORATION: self.analyze_collaboration,
            QueryType.FIND_FREQUENT_COLLABORATORS: self.find_frequent_collaborators,
            QueryType.ANALYZE_MEETING_PATTERNS: self.analyze_meeting_patterns,
            QueryType.GET_DEPARTMENT_INSIGHTS: self.get_department_insights,
            QueryType.ANALYZE_TOPIC_TRENDS: self.analyze_topic_trends,
            QueryType.FIND_MEETING_CONFLICTS: self.find_meeting_conflicts,
            QueryType.GET_PRODUCTIVITY_INSIGHTS: self.get_productivity_insights,
            QueryType.ANALYZE_COMMUNICATION_FLOW: self.analyze_communication_flow,
        }
        missing = set(QueryType) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No graph handler for query types: {sorted(t.value for t in missing)}")

    @property
    def graph(self) -> GraphDatabaseService:
        if self._graph is None:
            self._graph = get_graph_service()
        return self._graph

    async def execute_query(
        self,
        query_type: Union[QueryType, str],
        parameters: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, List[Any]]:
        """
        Run one query.

        Raises:
            ValueError: If ``query_type`` is not a known query type
        """
        query_type = QueryType(query_type)
        parameters = dict(parameters or {})
        user_context = user_context or {}

        rows = await self._handlers[query_type](parameters, user_context)
        logger.debug("Graph query executed", query_type=query_type.value, results=len(rows))
        return {"results": rows}

    @staticmethod
    def list_tools() -> List[Dict[str, Any]]:
        return [
            {"name": query_type.value, **details}
            for query_type, details in TOOL_CATALOG.items()
        ]

    def _user_email(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> Optional[str]:
        user = user_context.get("user") or {}
        return parameters.get("userEmail") or user.get("email") or user_context.get("user_email")

    def _user_filter(self, alias: str, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> Optional[CypherFilter]:
        """Time-windowed filter over meetings the requesting user attended or organized; ``None`` without a user."""
        user_email = self._user_email(parameters, user_context)
        if not user_email:
            return None
        where = CypherFilter()
        where.time_window(alias, parameters, self.clock())
        where.add(
            f"EXISTS {{ MATCH (:Person {{email: $userEmail}})-[:ATTENDED|ORGANIZED]->({alias}) }}",
            userEmail=user_email,
        )
        return where

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def find_meetings(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []

        match = "MATCH (m:Meeting)"
        participant = parameters.get("participantEmail") or parameters.get("person")
        if participant:
            match += "<-[:ATTENDED|ORGANIZED]-(p:Person)"
            where.add(
                "(toLower(p.email) CONTAINS toLower($participant) OR toLower(p.name) CONTAINS toLower($participant))",
                participant=participant,
            )

        keyword = parameters.get("keyword") or parameters.get("keywords")
        if keyword:
            where.add(
                "(toLower(m.title) CONTAINS toLower($keyword) OR toLower(m.description) CONTAINS toLower($keyword))",
                keyword=keyword,
            )
        meeting_ids = _string_list(parameters.get("meetingIds"))
        if meeting_ids:
            where.add("m.id IN $meetingIds", meetingIds=meeting_ids)

        query = f"{match} {where.where()} WITH DISTINCT m {MEETING_PROJECTION}"
        return await self.graph.run_read(query, {**where.params, "limit": _limit(parameters)})

    async def general_query(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await self.find_meetings(
            {"keyword": parameters.get("keyword"), "limit": _limit(parameters, 20), "timeframe": parameters.get("timeframe")},
            user_context,
        )

    async def get_participants(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []

        meeting_ids = _string_list(parameters.get("meetingIds"))
        if meeting_ids:
            where.add("m.id IN $meetingIds", meetingIds=meeting_ids)
        domain = parameters.get("emailDomain")
        if domain:
            where.add("p.email ENDS WITH $domain", domain="@" + str(domain).lstrip("@"))
        if parameters.get("department"):
            where.add("toLower(p.department) = toLower($department)", department=parameters["department"])
        emails = _string_list(parameters.get("participantEmails"))
        if emails:
            where.add("p.email IN $emails", emails=emails)

        query = f"""
        MATCH (p:Person)-[:ATTENDED|ORGANIZED]->(m:Meeting)
        {where.where()}
        RETURN p.email AS email, p.name AS name, p.department AS department, p.title AS title,
               count(DISTINCT m) AS meetingCount
        ORDER BY meetingCount DESC
        LIMIT $limit
        """
        return await self.graph.run_read(query, {**where.params, "limit": _limit(parameters)})

    async def find_documents(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []

        meeting_ids = _string_list(parameters.get("meetingIds") or parameters.get("meetingId"))
        if meeting_ids:
            where.add("(m.id IN $meetingIds OR m.googleEventId IN $meetingIds)", meetingIds=meeting_ids)
        keyword = parameters.get("keyword") or parameters.get("keywords")
        if keyword:
            where.add("toLower(d.title) CONTAINS toLower($keyword)", keyword=keyword)

        query = f"""
        MATCH (m:Meeting)-[:HAS_DOCUMENT]->(d:Document)
        {where.where()}
        RETURN d.id AS id, d.title AS title, d.url AS url, d.mimeType AS mimeType,
               {{id: m.id, title: m.title, startTime: m.startTime}} AS meeting
        ORDER BY m.startTime DESC
        LIMIT $limit
        """
        return await self.graph.run_read(query, {**where.params, "limit": _limit(parameters, 20)})

    async def analyze_relationships(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        person = parameters.get("personEmail") or self._user_email(parameters, user_context)
        if not person:
            return []
        where = CypherFilter()
        where.time_window("m", parameters, self.clock())
        where.add("other.email <> $person", person=person)

        query = f"""
        MATCH (:Person {{email: $person}})-[:ATTENDED|ORGANIZED]->(m:Meeting)<-[:ATTENDED|ORGANIZED]-(other:Person)
        {where.where()}
        RETURN other.email AS email, other.name AS name, count(DISTINCT m) AS sharedMeetings,
               max(m.startTime) AS lastMeeting
        ORDER BY sharedMeetings DESC
        LIMIT $limit
        """
        return await self.graph.run_read(query, {**where.params, "limit": _limit(parameters)})

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    async def analyze_collaboration(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []
        where.add("a.email < b.email")
        if parameters.get("department"):
            where.add(
                "(toLower(a.department) = toLower($department) OR toLower(b.department) = toLower($department))",
                department=parameters["department"],
            )
        emails = _string_list(parameters.get("participantEmails") or parameters.get("collaboratorEmails"))
        if emails:
            where.add("(a.email IN $emails OR b.email IN $emails)", emails=emails)

        query = f"""
        MATCH (a:Person)-[:ATTENDED|ORGANIZED]->(m:Meeting)<-[:ATTENDED|ORGANIZED]-(b:Person)
        {where.where()}
        RETURN a.email AS person1, b.email AS person2, count(DISTINCT m) AS sharedMeetings,
               collect(DISTINCT m.title)[..5] AS sampleTitles
        ORDER BY sharedMeetings DESC
        LIMIT $limit
        """
        return await self.graph.run_read(query, {**where.params, "limit": _limit(parameters)})

    async def find_frequent_collaborators(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        user_email = self._user_email(parameters, user_context)
        if not user_email:
            return []
        where = CypherFilter()
        where.time_window("m", parameters, self.clock())
        where.add("other.email <> $userEmail", userEmail=user_email)

        query = f"""
        MATCH (:Person {{email: $userEmail}})-[:ATTENDED|ORGANIZED]->(m:Meeting)<-[:ATTENDED|ORGANIZED]-(other:Person)
        {where.where()}
        RETURN other.email AS email, other.name AS name, other.department AS department,
               count(DISTINCT m) AS sharedMeetings
        ORDER BY sharedMeetings DESC
        LIMIT $limit
        """
        return await self.graph.run_read(query, {**where.params, "limit": _limit(parameters, 10)})

    async def analyze_meeting_patterns(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []

        query = f"""
        MATCH (m:Meeting)
        {where.where()}
        RETURN m.startTime.dayOfWeek AS dayOfWeek, m.startTime.hour AS hour, count(m) AS meetings,
               avg(duration.between(m.startTime, m.endTime).minutes) AS averageMinutes
        ORDER BY meetings DESC
        """
        return await self.graph.run_read(query, where.params)

    async def get_department_insights(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []
        where.add("p.department IS NOT NULL")
        if parameters.get("department"):
            where.add("toLower(p.department) = toLower($department)", department=parameters["department"])

        query = f"""
        MATCH (p:Person)-[:ATTENDED|ORGANIZED]->(m:Meeting)
        {where.where()}
        RETURN p.department AS department, count(DISTINCT p) AS people, count(DISTINCT m) AS meetings
        ORDER BY meetings DESC
        """
        return await self.graph.run_read(query, where.params)

    async def analyze_topic_trends(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []
        rows = await self.graph.run_read(
            f"MATCH (m:Meeting) {where.where()} RETURN m.title AS title", where.params
        )

        counts: Counter = Counter()
        for row in rows:
            words = re.findall(r"[a-z][a-z0-9']+", (row.get("title") or "").lower())
            counts.update(word for word in set(words) if word not in TOPIC_STOPWORDS and len(word) > 2)

        return [{"topic": topic, "count": count} for topic, count in counts.most_common(_limit(parameters, 20))]

    async def find_meeting_conflicts(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        user_email = self._user_email(parameters, user_context)
        if not user_email:
            return []
        where = CypherFilter()
        where.time_window("a", parameters, self.clock())
        where.add("a.id < b.id AND a.startTime < b.endTime AND b.startTime < a.endTime")

        query = f"""
        MATCH (u:Person {{email: $userEmail}})-[:ATTENDED|ORGANIZED]->(a:Meeting),
              (u)-[:ATTENDED|ORGANIZED]->(b:Meeting)
        {where.where()}
        RETURN {{id: a.id, title: a.title, startTime: a.startTime, endTime: a.endTime}} AS first,
               {{id: b.id, title: b.title, startTime: b.startTime, endTime: b.endTime}} AS second
        ORDER BY a.startTime
        LIMIT $limit
        """
        return await self.graph.run_read(query, {**where.params, "userEmail": user_email, "limit": _limit(parameters)})

    async def get_productivity_insights(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        user_email = self._user_email(parameters, user_context)
        if not user_email:
            return []
        where = CypherFilter()
        where.time_window("m", parameters, self.clock())

        query = f"""
        MATCH (:Person {{email: $userEmail}})-[:ATTENDED|ORGANIZED]->(m:Meeting)
        {where.where()}
        WITH date.truncate('week', m.startTime) AS week, m
        RETURN week, count(m) AS meetings,
               sum(duration.between(m.startTime, m.endTime).minutes) / 60.0 AS meetingHours
        ORDER BY week
        """
        return await self.graph.run_read(query, {**where.params, "userEmail": user_email})

    async def analyze_communication_flow(self, parameters: Dict[str, Any], user_context: Dict[str, Any]) -> List[Dict[str, Any]]:
        where = self._user_filter("m", parameters, user_context)
        if where is None:
            return []

        query = f"""
        MATCH (organizer:Person)-[:ORGANIZED]->(m:Meeting)<-[:ATTENDED]-(attendee:Person)
        {where.where()}
        RETURN organizer.email AS fromEmail, attendee.email AS toEmail, count(DISTINCT m) AS meetings
        ORDER BY meetings DESC
        LIMIT $limit
        """
        return await self.graph.run_read(query, {**where.params, "limit": _limit(parameters)})


_graph_query_service: Optional[GraphQueryService] = None


def get_graph_query_service() -> GraphQueryService:
    """Get or create the global graph query service."""
    global _graph_query_service
    if _graph_query_service is None:
        _graph_query_service = GraphQueryService()
    return _graph_query_service
