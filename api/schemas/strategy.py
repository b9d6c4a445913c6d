"""Strategy, step and result schemas for the query planning pipeline.

Wire format is camelCase (``stepNumber``, ``queryType``...) because strategies
are exchanged with the LLM and returned to the browser as JSON. Python code
uses the snake_case attribute names; both are accepted on input.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class QueryType(str, Enum):
    """Closed set of graph query types a strategy step may use."""

    FIND_MEETINGS = "find_meetings"
    GET_PARTICIPANTS = "get_participants"
    FIND_DOCUMENTS = "find_documents"
    ANALYZE_RELATIONSHIPS = "analyze_relationships"
    GENERAL_QUERY = "general_query"
    ANALYZE_COLLABORATION = "analyze_collaboration"
    FIND_FREQUENT_COLLABORATORS = "find_frequent_collaborators"
    ANALYZE_MEETING_PATTERNS = "analyze_meeting_patterns"
    GET_DEPARTMENT_INSIGHTS = "get_department_insights"
    ANALYZE_TOPIC_TRENDS = "analyze_topic_trends"
    FIND_MEETING_CONFLICTS = "find_meeting_conflicts"
    GET_PRODUCTIVITY_INSIGHTS = "get_productivity_insights"
    ANALYZE_COMMUNICATION_FLOW = "analyze_communication_flow"

    @classmethod
    def is_known(cls, value: Any) -> bool:
        return isinstance(value, str) and value in _QUERY_TYPE_VALUES


_QUERY_TYPE_VALUES = frozenset(member.value for member in QueryType)

# Expensive (resource-intensive) analysis types
EXPENSIVE_QUERY_TYPES = frozenset({
    QueryType.ANALYZE_COLLABORATION,
    QueryType.ANALYZE_COMMUNICATION_FLOW,
    QueryType.ANALYZE_TOPIC_TRENDS,
    QueryType.GET_DEPARTMENT_INSIGHTS,
})

# Cheap, indexed lookups that narrow the working set
FILTERING_QUERY_TYPES = frozenset({
    QueryType.FIND_MEETINGS,
    QueryType.GET_PARTICIPANTS,
    QueryType.FIND_DOCUMENTS,
})

# Types that push a strategy's complexity estimate to "high"
COMPLEX_ANALYSIS_TYPES = frozenset({
    QueryType.ANALYZE_COLLABORATION,
    QueryType.ANALYZE_COMMUNICATION_FLOW,
    QueryType.ANALYZE_TOPIC_TRENDS,
})

# Steps of these types get a default timeframe when none is given
TIMEFRAME_DEFAULT_TYPES = frozenset({
    QueryType.FIND_MEETINGS,
    QueryType.ANALYZE_COLLABORATION,
    QueryType.ANALYZE_MEETING_PATTERNS,
})

TIMEFRAME_PARAMETERS = ("timeframe", "startDate", "endDate")


class EstimatedTime(str, Enum):
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CamelModel(BaseModel):
    """Base model accepting both camelCase aliases and field names."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=False)

    def to_wire(self) -> Dict[str, Any]:
        """Dump with camelCase keys and plain JSON values."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class Step(CamelModel):
    """One typed, parameterized query operation within a strategy."""

    step_number: int = Field(alias="stepNumber", ge=1, description="1-based position in the strategy")
    description: str = Field(default="", description="What this step accomplishes")
    query_type: QueryType = Field(alias="queryType", description="Graph query type to execute")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Query parameters")
    dependencies: List[int] = Field(default_factory=list, description="Earlier step numbers this step needs")
    estimated_time: EstimatedTime = Field(default=EstimatedTime.MEDIUM, alias="estimatedTime")
    purpose: Optional[str] = Field(default=None, description="Why the step is needed")

    def has_time_filter(self) -> bool:
        return bool(self.parameters.get("timeframe") or self.parameters.get("startDate"))


class StrategyMetadata(CamelModel):
    """Execution metadata stamped by the strategy optimizer."""

    optimized: bool = False
    optimization_count: int = Field(default=0, alias="optimizationCount")
    estimated_performance: Dict[str, Any] = Field(default_factory=dict, alias="estimatedPerformance")
    validation_timestamp: Optional[str] = Field(default=None, alias="validationTimestamp")


class Strategy(CamelModel):
    """A validated, ordered plan of query steps answering one question."""

    analysis: str = ""
    complexity: Complexity = Complexity.MEDIUM
    steps: List[Step] = Field(default_factory=list)
    expected_outcome: str = Field(default="", alias="expectedOutcome")
    follow_up_questions: List[str] = Field(default_factory=list, alias="followUpQuestions")
    optimizations: List[Dict[str, Any]] = Field(default_factory=list)
    execution: Dict[str, Any] = Field(default_factory=dict)
    performance_hints: List[str] = Field(default_factory=list, alias="performanceHints")
    metadata: Optional[StrategyMetadata] = None

    def get_step(self, step_number: int) -> Optional[Step]:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    @property
    def parallel_steps(self) -> List[int]:
        return list(self.execution.get("parallelSteps", []))


class StepResult(CamelModel):
    """Outcome of executing one step against the graph store."""

    step_number: int = Field(alias="stepNumber")
    query_type: QueryType = Field(alias="queryType")
    description: str = ""
    success: bool
    results: Dict[str, Any] = Field(default_factory=lambda: {"results": []})
    parameters: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    duration_ms: int = Field(default=0, alias="durationMs")
    timestamp: str = Field(default_factory=lambda: datetime.utcnow().isoformat())

    @property
    def items(self) -> List[Any]:
        """The raw result rows, or an empty list for malformed payloads."""
        rows = (self.results or {}).get("results")
        return rows if isinstance(rows, list) else []


class AnalysisResult(CamelModel):
    """Completeness judgement for a batch of step results."""

    needs_follow_up: bool = Field(alias="needsFollowUp")
    reason: str
    follow_up_steps: List[Step] = Field(default_factory=list, alias="followUpSteps")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    completeness: float = Field(default=0.0, ge=0.0, le=1.0)
    insights: List[str] = Field(default_factory=list)
    gaps: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    summary: Optional[str] = None


class Optimization(CamelModel):
    """A proposed strategy change; only ``auto_apply`` ones are applied."""

    type: str
    description: str
    impact: str = "medium"
    auto_apply: bool = Field(default=False, alias="autoApply")
    steps: Optional[List[int]] = None
    step_number: Optional[int] = Field(default=None, alias="stepNumber")
    parameter: Optional[str] = None
    value: Optional[Any] = None
    suggestion: Optional[str] = None


class BottleneckStep(CamelModel):
    step_number: int = Field(alias="stepNumber")
    estimated_time: float = Field(alias="estimatedTime")
    reason: str


class ResourceIntensiveStep(CamelModel):
    step_number: int = Field(alias="stepNumber")
    reason: str


class PerformanceEstimate(CamelModel):
    estimated_total_time: float = Field(default=0.0, alias="estimatedTotalTime")
    bottleneck_steps: List[BottleneckStep] = Field(default_factory=list, alias="bottleneckSteps")
    parallelizable: List[int] = Field(default_factory=list)
    resource_intensive: List[ResourceIntensiveStep] = Field(default_factory=list, alias="resourceIntensive")
    complexity: str = "medium"


class ValidationResult(CamelModel):
    """Outcome of static strategy validation."""

    is_valid: bool = Field(default=True, alias="isValid")
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    optimizations: List[Optimization] = Field(default_factory=list)
    estimated_performance: PerformanceEstimate = Field(default_factory=PerformanceEstimate, alias="estimatedPerformance")
