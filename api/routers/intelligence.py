from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from api.auth import User, get_current_user
from api.errors import PlanningError, StrategyValidationError
from api.execution.context_manager import ExecutionContextStore, get_context_store
from api.execution.orchestrator import QueryPipeline, get_query_pipeline
from api.models import (
    DepartmentAssignmentRequest,
    DepartmentRequest,
    OrganizationRequest,
    ProcessRequest,
    ProcessResponse,
    QueryRequest,
    QueryResponse,
    ReportingRelationshipRequest,
    TestToolRequest,
    TestToolResponse,
    ToolsResponse,
)
from api.planning.query_planner import QueryPlanner, get_query_planner
from api.planning.strategy_validator import StrategyValidator, get_strategy_validator
from api.schemas.strategy import QueryType
from api.tools.graph_tools import TOOL_CATALOG, GraphQueryService, get_graph_query_service
from libs.graph.neo4j_client import GraphDatabaseService, get_graph_service
from libs.graph.organization import OrganizationService, email_domain, get_organization_service
from libs.worker.cataloging import CatalogingWorker, get_cataloging_worker

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/intelligence", tags=["Intelligence"])


def _query_context(user: User, query_request: QueryRequest) -> Dict[str, Any]:
    return {
        "user": user.to_context(),
        "user_email": user.email,
        "conversation_history": query_request.conversation_history,
    }


def _tool_context(user: User) -> Dict[str, Any]:
    return {"user": user.to_context(), "user_email": user.email}


def _require_own_domain(user: User, domain: str) -> str:
    """Organization data is only visible to members of that organization."""
    domain = domain.lower()
    if email_domain(user.email) != domain:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not a member of organization {domain}",
        )
    return domain


def _require_query(query_request: QueryRequest) -> str:
    query = query_request.query.strip()
    if not query:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Query is required and must be a non-empty string",
        )
    return query


@router.post("/query", response_model=QueryResponse)
async def query_intelligence(
    request: Request,
    query_request: QueryRequest,
    current_user: User = Depends(get_current_user),
    pipeline: QueryPipeline = Depends(get_query_pipeline),
) -> Dict[str, Any]:
    """Answer a natural-language question about the user's meetings.

    Raises:
        HTTPException: 400 for an empty query, 422 when the planned strategy
            is rejected by validation, 503 when no strategy could be planned
    """
    query = _require_query(query_request)
    request_id = getattr(request.state, "request_id", "unknown")
    logger.info("Processing intelligence query", request_id=request_id, user=current_user.email, query=query[:100])

    try:
        return await pipeline.process_query(query, _query_context(current_user, query_request))
    except StrategyValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "Query strategy failed validation", "errors": e.errors, "warnings": e.warnings},
        )
    except PlanningError as e:
        logger.error("Planning exhausted", request_id=request_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not plan a strategy for this query",
        )


@router.post("/query/debug")
async def debug_query_strategy(
    query_request: QueryRequest,
    current_user: User = Depends(get_current_user),
    planner: QueryPlanner = Depends(get_query_planner),
    validator: StrategyValidator = Depends(get_strategy_validator),
) -> Dict[str, Any]:
    """Plan and validate a query without executing it."""
    query = _require_query(query_request)
    started = time.time()

    try:
        strategy = await planner.create_strategy(query, _query_context(current_user, query_request))
    except PlanningError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not plan a strategy for this query",
        )
    validation = validator.validate(strategy)
    optimized = validator.optimize_strategy(strategy, validation) if validation.is_valid else strategy

    return {
        "query": query,
        "strategy": optimized.to_wire(),
        "validation": validation.to_wire(),
        "planningTimeMs": int((time.time() - started) * 1000),
    }


@router.post("/test-tool", response_model=TestToolResponse, response_model_exclude_none=True)
async def test_tool(
    tool_request: TestToolRequest,
    current_user: User = Depends(get_current_user),
    tools: GraphQueryService = Depends(get_graph_query_service),
) -> Dict[str, Any]:
    """Run a single graph tool with explicit parameters."""
    if not QueryType.is_known(tool_request.tool):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown tool: {tool_request.tool}",
        )

    try:
        result = await tools.execute_query(
            tool_request.tool,
            tool_request.parameters,
            _tool_context(current_user),
        )
    except Exception as e:
        logger.error("Tool execution failed", tool=tool_request.tool, error=str(e))
        return {"success": False, "error": str(e)}
    return {"success": True, "result": result}


@router.get("/tools", response_model=ToolsResponse)
async def list_tools(current_user: User = Depends(get_current_user)) -> Dict[str, Any]:
    tools = GraphQueryService.list_tools()
    return {"tools": tools, "count": len(tools)}


@router.post("/process", response_model=ProcessResponse)
async def process_calendar(
    process_request: ProcessRequest,
    current_user: User = Depends(get_current_user),
    worker: CatalogingWorker = Depends(get_cataloging_worker),
) -> Dict[str, Any]:
    """Catalog the user's calendar into the graph store."""
    user = {**current_user.to_context(), "photoUrl": current_user.picture}
    return await worker.process_calendar_data(
        process_request.access_token,
        user,
        {"monthsBack": process_request.months_back},
    )


@router.get("/status")
async def processing_status(
    current_user: User = Depends(get_current_user),
    worker: CatalogingWorker = Depends(get_cataloging_worker),
) -> Dict[str, Any]:
    return worker.get_processing_status()


@router.get("/statistics")
async def context_statistics(
    current_user: User = Depends(get_current_user),
    store: ExecutionContextStore = Depends(get_context_store),
) -> Dict[str, Any]:
    return store.get_statistics()


@router.get("/query/intents")
async def query_intents(current_user: User = Depends(get_current_user)) -> Dict[str, Any]:
    """Query types the planner can route to, with their parameters."""
    return {query_type.value: details for query_type, details in TOOL_CATALOG.items()}


@router.get("/meetings")
async def recent_meetings(
    limit: int = Query(default=10, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    tools: GraphQueryService = Depends(get_graph_query_service),
) -> List[Dict[str, Any]]:
    result = await tools.execute_query(QueryType.FIND_MEETINGS, {"limit": limit}, _tool_context(current_user))
    return result["results"]


@router.get("/meetings/{meeting_id}/participants")
async def meeting_participants(
    meeting_id: str,
    current_user: User = Depends(get_current_user),
    tools: GraphQueryService = Depends(get_graph_query_service),
) -> List[Dict[str, Any]]:
    result = await tools.execute_query(
        QueryType.GET_PARTICIPANTS, {"meetingIds": [meeting_id]}, _tool_context(current_user)
    )
    return result["results"]


@router.get("/people")
async def meetings_with_person(
    email: Optional[str] = None,
    limit: int = Query(default=10, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    tools: GraphQueryService = Depends(get_graph_query_service),
) -> List[Dict[str, Any]]:
    """The user's meetings shared with ``email`` (all of the user's meetings by default)."""
    parameters: Dict[str, Any] = {"limit": limit}
    if email and email.lower() != current_user.email.lower():
        parameters["participantEmail"] = email
    result = await tools.execute_query(QueryType.FIND_MEETINGS, parameters, _tool_context(current_user))
    return result["results"]


# ---------------------------------------------------------------------------
# Organization structure
# ---------------------------------------------------------------------------


@router.post("/organization", status_code=status.HTTP_201_CREATED)
async def create_organization(
    organization: OrganizationRequest,
    current_user: User = Depends(get_current_user),
    graph: GraphDatabaseService = Depends(get_graph_service),
) -> Dict[str, Any]:
    domain = _require_own_domain(current_user, organization.domain)
    return await graph.create_organization({**organization.model_dump(), "domain": domain})


@router.post("/department", status_code=status.HTTP_201_CREATED)
async def create_department(
    department: DepartmentRequest,
    current_user: User = Depends(get_current_user),
    graph: GraphDatabaseService = Depends(get_graph_service),
) -> Dict[str, Any]:
    domain = _require_own_domain(current_user, department.organization_domain)
    created = await graph.create_department({**department.model_dump(by_alias=True), "organizationDomain": domain})
    if not created:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Organization {domain} not found")
    return created


@router.post("/person/{email}/department", status_code=status.HTTP_201_CREATED)
async def assign_department(
    email: str,
    assignment: DepartmentAssignmentRequest,
    current_user: User = Depends(get_current_user),
    graph: GraphDatabaseService = Depends(get_graph_service),
) -> Dict[str, Any]:
    _require_own_domain(current_user, email_domain(email))
    result = await graph.assign_person_to_department(
        email, assignment.department_code, assignment.role, assignment.is_manager
    )
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Person or department not found")
    logger.info("Person assigned to department", email=email, department=assignment.department_code)
    return result


@router.post("/reporting-relationship", status_code=status.HTTP_201_CREATED)
async def create_reporting_relationship(
    relationship: ReportingRelationshipRequest,
    current_user: User = Depends(get_current_user),
    graph: GraphDatabaseService = Depends(get_graph_service),
) -> Dict[str, Any]:
    _require_own_domain(current_user, email_domain(relationship.manager_email))
    _require_own_domain(current_user, email_domain(relationship.report_email))
    result = await graph.create_reporting_relationship(relationship.manager_email, relationship.report_email)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Manager or report not found")
    return result


@router.get("/organization/{domain}/hierarchy")
async def organization_hierarchy(
    domain: str,
    current_user: User = Depends(get_current_user),
    organizations: OrganizationService = Depends(get_organization_service),
) -> Dict[str, Any]:
    return await organizations.get_organizational_hierarchy(_require_own_domain(current_user, domain))


@router.get("/organization/{domain}/chart-data")
async def organization_chart_data(
    domain: str,
    current_user: User = Depends(get_current_user),
    organizations: OrganizationService = Depends(get_organization_service),
) -> Dict[str, Any]:
    return await organizations.prepare_organization_chart_data(_require_own_domain(current_user, domain))


@router.get("/organization/{domain}/collaboration")
async def cross_department_collaboration(
    domain: str,
    days: int = Query(default=30, ge=1, le=365),
    current_user: User = Depends(get_current_user),
    organizations: OrganizationService = Depends(get_organization_service),
) -> List[Dict[str, Any]]:
    return await organizations.get_cross_department_collaboration(_require_own_domain(current_user, domain), days)


@router.get("/department/{code}/statistics")
async def department_statistics(
    code: str,
    days: int = Query(default=30, ge=1, le=365),
    current_user: User = Depends(get_current_user),
    organizations: OrganizationService = Depends(get_organization_service),
) -> Dict[str, Any]:
    stats = await organizations.get_department_statistics(email_domain(current_user.email), code, days)
    if stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Department not found")
    return stats


@router.get("/person/{email}/colleagues")
async def person_colleagues(
    email: str,
    current_user: User = Depends(get_current_user),
    organizations: OrganizationService = Depends(get_organization_service),
) -> List[Dict[str, Any]]:
    _require_own_domain(current_user, email_domain(email))
    return await organizations.find_colleagues(email)
