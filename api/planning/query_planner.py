"""
Query planner: turns a natural-language question into a multi-step strategy.

The LLM is asked for a strict JSON strategy. A response that does not parse
as that JSON is a contract violation, and the planner falls back to a
single-step keyword strategy so the pipeline always has something to run.
"""

import json
import re
import time
from typing import Any, Dict, List, Optional

import structlog
from langsmith import traceable

from api.composer.prompts import build_planning_prompt, get_system_prompt
from api.errors import PlanningContractViolation, PlanningError
from api.llm import LLMService, get_llm_service, strip_code_fence
from api.observability.tracing import get_pipeline_monitor
from api.schemas.strategy import (
    COMPLEX_ANALYSIS_TYPES,
    TIMEFRAME_PARAMETERS,
    Complexity,
    EstimatedTime,
    QueryType,
    Step,
    Strategy,
)
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

# Only used to label a parse failure in the logs, never to decide anything.
CONVERSATIONAL_MARKERS = (
    "i found",
    "i looked",
    "i searched",
    "couldn't generate",
    "can happen for a few common reasons",
)

MONTH_NAMES = (
    "january", "february", "march", "april", "june", "july",
    "august", "september", "october", "november", "december",
)  # "may" is left out, it is too common as a verb

_WORD_RE = re.compile(r"[a-z']+")


def user_email_from(context: Dict[str, Any]) -> Optional[str]:
    user = context.get("user") or {}
    return user.get("email") or context.get("user_email")


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def classify_unparseable_response(text: str) -> str:
    """Label a response that failed to parse, for diagnostics."""
    lowered = (text or "").strip().lower()
    if not lowered:
        return "empty"
    if any(marker in lowered for marker in CONVERSATIONAL_MARKERS):
        return "conversational"
    if not lowered.startswith("{"):
        return "prose"
    return "malformed_json"


def normalize_steps(raw_steps: List[Any], start_at: int = 1) -> List[Step]:
    """
    Normalize raw LLM steps into ``Step`` models.

    Steps are renumbered contiguously from ``start_at``. Unknown query types
    become ``general_query``; dependencies outside ``1..stepNumber-1`` are
    dropped silently.

    Lenient where ``StrategyValidator`` is strict. Keep the two different:
    the validator gates execution, this keeps imperfect LLM output runnable.
    """
    steps: List[Step] = []
    step_number = start_at

    for raw in raw_steps:
        if not isinstance(raw, dict):
            logger.warning("Dropping non-object strategy step", step=str(raw)[:100])
            continue

        query_type = raw.get("queryType") or raw.get("query_type")
        if not QueryType.is_known(query_type):
            logger.warning(
                "Unknown query type, defaulting to general_query",
                query_type=query_type,
                step_number=step_number,
            )
            query_type = QueryType.GENERAL_QUERY.value

        parameters = raw.get("parameters")
        if not isinstance(parameters, dict):
            parameters = {}

        raw_dependencies = raw.get("dependencies")
        if not isinstance(raw_dependencies, list):
            raw_dependencies = []
        dependencies = []
        for dep in raw_dependencies:
            dep = _coerce_int(dep)
            if dep is not None and 0 < dep < step_number and dep not in dependencies:
                dependencies.append(dep)

        estimated_time = raw.get("estimatedTime") or raw.get("estimated_time")
        if estimated_time not in {e.value for e in EstimatedTime}:
            estimated_time = EstimatedTime.MEDIUM.value

        steps.append(
            Step(
                step_number=step_number,
                description=str(raw.get("description") or ""),
                query_type=query_type,
                parameters=parameters,
                dependencies=dependencies,
                estimated_time=estimated_time,
                purpose=raw.get("purpose"),
            )
        )
        step_number += 1

    return steps


def estimate_complexity(steps: List[Step]) -> Complexity:
    """Derive complexity from step count, slow steps and analysis types."""
    has_slow = any(step.estimated_time == EstimatedTime.SLOW for step in steps)
    has_complex_analysis = any(step.query_type in COMPLEX_ANALYSIS_TYPES for step in steps)

    if len(steps) <= 2 and not has_slow:
        return Complexity.LOW
    if len(steps) <= 4 and not has_complex_analysis:
        return Complexity.MEDIUM
    return Complexity.HIGH


def generate_optimizations(steps: List[Step]) -> List[Dict[str, Any]]:
    """Planner-side optimization suggestions attached to the strategy."""
    optimizations = []

    has_timeframe = any(
        any(step.parameters.get(name) for name in TIMEFRAME_PARAMETERS) for step in steps
    )
    if not has_timeframe:
        optimizations.append({
            "type": "performance",
            "suggestion": "Consider adding timeframe filters to improve query performance",
            "impact": "medium",
        })

    independent = [step.step_number for step in steps if not step.dependencies]
    if len(independent) > 1:
        optimizations.append({
            "type": "performance",
            "suggestion": f"Steps {', '.join(str(n) for n in independent)} can be executed in parallel",
            "impact": "high",
        })

    if any(step.estimated_time == EstimatedTime.SLOW for step in steps):
        optimizations.append({
            "type": "complexity",
            "suggestion": "Consider breaking down slow queries into smaller, more focused steps",
            "impact": "medium",
        })

    return optimizations


class QueryPlanner:
    """Creates query strategies with an LLM, falling back to keyword rules."""

    def __init__(self, llm_service: Optional[LLMService] = None):
        self._llm_service = llm_service
        self.settings = get_settings()

    @property
    def llm_service(self) -> LLMService:
        if self._llm_service is None:
            self._llm_service = get_llm_service()
        return self._llm_service

    @traceable(run_type="chain", name="01_plan_strategy", tags=["planning", "meeting-intelligence"])
    async def create_strategy(self, user_query: str, context: Optional[Dict[str, Any]] = None) -> Strategy:
        """
        Create a strategy for ``user_query``.

        Raises:
            PlanningError: If neither the LLM nor the fallback produce a strategy
        """
        context = context or {}
        start_time = time.time()

        try:
            strategy = await self.plan_with_llm(user_query, context)
            source = "llm"
        except PlanningContractViolation as e:
            logger.warning("Planning contract violated, using fallback strategy", error=str(e))
            get_pipeline_monitor().record_fallback()
            try:
                strategy = self.create_fallback_strategy(user_query, context)
            except Exception as fallback_error:
                logger.error("Fallback strategy failed", error=str(fallback_error))
                raise PlanningError(f"Failed to create query strategy: {fallback_error}") from fallback_error
            source = "fallback"

        logger.info(
            "Strategy created",
            source=source,
            steps=len(strategy.steps),
            complexity=strategy.complexity.value,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return strategy

    async def plan_with_llm(self, user_query: str, context: Dict[str, Any]) -> Strategy:
        """Ask the LLM for a strategy; raises ``PlanningContractViolation`` on any failure."""
        prompt = build_planning_prompt(user_query, context, self.settings.planner_history_turns)

        try:
            response = await self.llm_service.generate_response(
                prompt,
                {},
                {**context, "system_prompt": get_system_prompt("strategy_planning")},
            )
        except Exception as e:
            raise PlanningContractViolation(f"LLM call failed: {e!r}") from e

        raw = self.parse_strategy_response(response)
        return self.build_strategy(raw)

    def parse_strategy_response(self, response: Any) -> Dict[str, Any]:
        """
        Strictly parse the planning response.

        A failed parse is the only signal that the LLM broke the contract;
        ``classify_unparseable_response`` just labels the failure for the log.
        """
        text = strip_code_fence(response)

        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, TypeError) as e:
            kind = classify_unparseable_response(text)
            logger.warning("Planner response is not JSON", kind=kind, preview=text[:200])
            raise PlanningContractViolation(f"Response is not a JSON strategy ({kind})", raw_response=text) from e

        if not isinstance(parsed, dict):
            raise PlanningContractViolation("Strategy must be a JSON object", raw_response=text)

        steps = parsed.get("steps")
        if not isinstance(steps, list) or not steps:
            raise PlanningContractViolation("Strategy must contain a non-empty steps array", raw_response=text)

        if not parsed.get("analysis") or not parsed.get("complexity"):
            raise PlanningContractViolation("Strategy must contain analysis and complexity fields", raw_response=text)

        return parsed

    def build_strategy(self, raw: Dict[str, Any]) -> Strategy:
        """Normalize a parsed strategy object into a ``Strategy``."""
        steps = normalize_steps(raw.get("steps", []))
        if not steps:
            raise PlanningContractViolation("Strategy has no usable steps")

        follow_ups = raw.get("followUpQuestions")
        if not isinstance(follow_ups, list):
            follow_ups = []

        stated = raw.get("complexity")
        complexity = estimate_complexity(steps)
        if stated != complexity.value:
            logger.debug("Overriding stated complexity", stated=stated, estimated=complexity.value)

        return Strategy(
            analysis=str(raw.get("analysis") or ""),
            complexity=complexity,
            steps=steps,
            expected_outcome=str(raw.get("expectedOutcome") or ""),
            follow_up_questions=[str(q) for q in follow_ups],
            optimizations=generate_optimizations(steps),
        )

    def create_fallback_strategy(self, user_query: str, context: Optional[Dict[str, Any]] = None) -> Strategy:
        """Single-step strategy chosen by keyword matching on the query."""
        context = context or {}
        query = (user_query or "").lower()
        words = set(_WORD_RE.findall(query))

        query_type = QueryType.FIND_MEETINGS
        description = "Find relevant meetings"

        if "meeting" in query or "week" in query or "today" in query or "schedule" in query:
            description = "Find meetings based on timeframe"
        elif "people" in words or "participant" in query or "who" in words:
            query_type = QueryType.GET_PARTICIPANTS
            description = "Find people and participants"
        elif "document" in query or "file" in query:
            query_type = QueryType.FIND_DOCUMENTS
            description = "Find documents and files"
        elif "collaborat" in query:
            query_type = QueryType.ANALYZE_COLLABORATION
            description = "Analyze collaboration patterns"

        parameters: Dict[str, Any] = {}
        if query_type == QueryType.FIND_MEETINGS:
            parameters["timeframe"] = self.guess_timeframe(query, words)
            email = user_email_from(context)
            if email:
                parameters["userEmail"] = email

        steps = normalize_steps([{
            "description": description,
            "queryType": query_type.value,
            "parameters": parameters,
            "dependencies": [],
            "estimatedTime": EstimatedTime.FAST.value,
            "purpose": "Respond to user query with relevant data",
        }])

        return Strategy(
            analysis=f"Simple strategy for: {user_query}",
            complexity=estimate_complexity(steps),
            steps=steps,
            expected_outcome="Provide relevant information based on user query",
            follow_up_questions=["Would you like more details?", "Any specific timeframe?"],
            optimizations=generate_optimizations(steps),
        )

    @staticmethod
    def guess_timeframe(query: str, words: set) -> str:
        if "last month" in query:
            return "last_month"
        for month in MONTH_NAMES:
            if month in words:
                return month
        if "month" in query:
            return "this_month"
        if "week" in query:
            return "this_week"
        if "today" in words:
            return "today"
        if "tomorrow" in words:
            return "tomorrow"
        return "recent"


_query_planner: Optional[QueryPlanner] = None


def get_query_planner() -> QueryPlanner:
    """Get or create the global query planner instance."""
    global _query_planner
    if _query_planner is None:
        _query_planner = QueryPlanner()
    return _query_planner
