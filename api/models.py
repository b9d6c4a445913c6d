"""Pydantic models for the meeting intelligence API.

Request and response bodies for the ``/api/intelligence`` routes and the
health endpoints. Field names are camelCase where the browser client sends
or expects camelCase.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueryRequest(BaseModel):
    """Request model for a natural-language question."""

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(
        default="",
        max_length=2000,
        description="The user's question",
        examples=["Who did I meet with most last month?"],
    )
    conversation_history: List[Dict[str, Any]] = Field(
        default_factory=list,
        alias="conversationHistory",
        max_length=10,
        description="Previous turns as {query, response} objects",
    )


class QueryMetadata(BaseModel):
    """Execution metadata returned with every answer."""

    model_config = ConfigDict(extra="allow")

    execution_id: str = Field(alias="executionId")
    iterations: int
    results_collected: int = Field(alias="resultsCollected")
    duration: int = Field(description="Pipeline duration in milliseconds")
    steps_executed: int = Field(alias="stepsExecuted")
    failed_steps: List[int] = Field(default_factory=list, alias="failedSteps")
    confidence: Optional[float] = None
    completeness: Optional[float] = None
    errors: List[str] = Field(default_factory=list)
    gaps: List[str] = Field(default_factory=list)
    strategy: Optional[Dict[str, Any]] = None


class QueryResponse(BaseModel):
    """Response model for ``POST /query``."""

    success: bool
    response: Optional[str] = Field(default=None, description="The synthesized answer")
    metadata: QueryMetadata


class TestToolRequest(BaseModel):
    """Run a single graph tool directly."""

    tool: str = Field(description="Query type name", examples=["find_meetings"])
    parameters: Dict[str, Any] = Field(default_factory=dict, examples=[{"timeframe": "this_week"}])


class TestToolResponse(BaseModel):
    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class ToolsResponse(BaseModel):
    tools: List[Dict[str, Any]]
    count: int


class ProcessRequest(BaseModel):
    """Start calendar cataloging for the authenticated user."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken", min_length=1, description="Google OAuth access token")
    months_back: int = Field(default=1, alias="monthsBack", ge=1, le=24, description="Months of history to catalog")


class ProcessResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Literal["completed", "already_running", "error"]
    message: str
    processing_status: Dict[str, Any] = Field(alias="processingStatus")


class OrganizationRequest(BaseModel):
    """Create or update an organization."""

    name: str = Field(min_length=1)
    domain: str = Field(min_length=3, examples=["example.com"])
    description: Optional[str] = None
    industry: Optional[str] = None


class DepartmentRequest(BaseModel):
    """Create or update a department within an organization."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    code: str = Field(min_length=1, examples=["ENG"])
    description: Optional[str] = None
    organization_domain: str = Field(alias="organizationDomain", min_length=3)
    parent_department_code: Optional[str] = Field(default=None, alias="parentDepartmentCode")


class DepartmentAssignmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    department_code: str = Field(alias="departmentCode", min_length=1)
    role: Optional[str] = None
    is_manager: bool = Field(default=False, alias="isManager")


class ReportingRelationshipRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    manager_email: str = Field(alias="managerEmail", min_length=3)
    report_email: str = Field(alias="reportEmail", min_length=3)


class HealthResponse(BaseModel):
    """Response model for health check endpoints.

    Attributes:
        status: Health status (healthy/unhealthy/ready/not_ready)
        service: Service name
        version: Service version
        timestamp: Unix timestamp
        details: Optional additional details
    """

    status: Literal["healthy", "unhealthy", "ready", "not_ready"] = Field(
        description="Health status",
        examples=["healthy"],
    )
    service: str = Field(description="Service name", examples=["api"])
    version: str = Field(description="Service version", examples=["0.1.0"])
    timestamp: float = Field(default_factory=time.time, description="Unix timestamp")
    details: dict[str, str] | None = Field(
        default=None,
        description="Optional additional details",
        examples=[{"neo4j": "connected"}],
    )


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(description="Error code", examples=["VALIDATION_ERROR"])
    message: str = Field(description="Human-readable error message")
    details: Dict[str, Any] | None = Field(default=None, description="Optional error details")
    request_id: str | None = Field(default=None, description="Request identifier for tracking")
