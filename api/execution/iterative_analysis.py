"""
Iterative analysis of intermediate step results.

After each execution batch the successful results are aggregated and an LLM
judges completeness and confidence. When thresholds are missed, a second LLM
call proposes a bounded number of follow-up steps. Neither call can abort the
pipeline: failures degrade to a neutral analysis or an empty step list.
"""

import json
from typing import Any, Dict, List, Optional

import structlog
from langsmith import traceable

from api.composer.prompts import build_analysis_prompt, build_follow_up_prompt, get_system_prompt
from api.errors import AnalysisParseError
from api.execution.context_manager import ENTITY_KINDS, extract_topics
from api.llm import LLMService, get_llm_service, strip_code_fence
from api.planning.query_planner import normalize_steps
from api.schemas.strategy import AnalysisResult, Complexity, QueryType, Step, StepResult, Strategy
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

INSUFFICIENT_RESULTS_REASON = "Insufficient successful results for analysis"
NEUTRAL_COMPLETENESS = 0.5
HIGH_COMPLEXITY_COMPLETENESS = 0.9


def _clamp(value: Any) -> Optional[float]:
    """Clamp numeric LLM scores into [0, 1]; non-numbers give None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0.0, min(1.0, float(value)))


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def aggregate_results(results: List[StepResult]) -> Dict[str, Any]:
    """Totals, per-type counts, entity sets and timeframes seen across results."""
    entities: Dict[str, set] = {kind: set() for kind in ENTITY_KINDS}
    aggregated: Dict[str, Any] = {"totalResults": 0, "resultsByType": {}, "timeRanges": []}

    for result in results:
        rows = result.items
        query_type = result.query_type.value
        aggregated["totalResults"] += len(rows)
        aggregated["resultsByType"][query_type] = aggregated["resultsByType"].get(query_type, 0) + len(rows)

        for item in rows:
            if not isinstance(item, dict):
                continue
            if item.get("email"):
                entities["people"].add(item["email"])
            organizer = item.get("organizer")
            if isinstance(organizer, dict) and organizer.get("email"):
                entities["people"].add(organizer["email"])
            for attendee in item.get("attendees") or []:
                if isinstance(attendee, dict) and attendee.get("email"):
                    entities["people"].add(attendee["email"])

            if item.get("id"):
                if result.query_type == QueryType.FIND_DOCUMENTS:
                    entities["documents"].add(item["id"])
                elif result.query_type == QueryType.FIND_MEETINGS or item.get("title"):
                    entities["meetings"].add(item["id"])

            entities["topics"].update(extract_topics(item.get("title")))
            entities["topics"].update(extract_topics(item.get("description")))

        parameters = result.parameters or {}
        if parameters.get("timeframe") or parameters.get("startDate"):
            aggregated["timeRanges"].append({
                "queryType": query_type,
                "timeframe": parameters.get("timeframe"),
                "startDate": parameters.get("startDate"),
                "endDate": parameters.get("endDate"),
            })

    aggregated["entities"] = {kind: sorted(values) for kind, values in entities.items()}
    return aggregated


def calculate_metrics(results: List[StepResult], aggregated: Dict[str, Any]) -> Dict[str, float]:
    """Fallback confidence/completeness from success rate, data richness and entity diversity."""
    success_rate = sum(1 for r in results if r.success) / len(results) if results else 0.0
    data_richness = min(aggregated["totalResults"] / 10, 1.0)
    entity_diversity = sum(1 for values in aggregated["entities"].values() if values) / len(ENTITY_KINDS)

    return {
        "confidence": (success_rate + data_richness) / 2,
        "completeness": (data_richness + entity_diversity) / 2,
        "dataQuality": success_rate,
        "entityDiversity": entity_diversity,
    }


def parse_json_object(response: Any) -> Dict[str, Any]:
    """Fence-strip and parse an LLM response that must be a JSON object."""
    text = strip_code_fence(response)
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise AnalysisParseError(f"Response is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise AnalysisParseError("Response must be a JSON object")
    return parsed


class IterativeAnalysisService:
    """Decides whether executed results answer the question or need follow-ups."""

    def __init__(self, llm_service: Optional[LLMService] = None):
        settings = get_settings()
        self._llm_service = llm_service
        self.thresholds: Dict[str, Any] = {
            "min_results_for_analysis": settings.min_results_for_analysis,
            "max_follow_up_steps": settings.max_follow_up_steps,
            "confidence_threshold": settings.confidence_threshold,
            "completeness_threshold": settings.completeness_threshold,
        }

    @property
    def llm_service(self) -> LLMService:
        if self._llm_service is None:
            self._llm_service = get_llm_service()
        return self._llm_service

    def set_thresholds(self, **thresholds: Any) -> None:
        unknown = set(thresholds) - set(self.thresholds)
        if unknown:
            raise ValueError(f"Unknown thresholds: {sorted(unknown)}")
        self.thresholds.update(thresholds)

    def get_thresholds(self) -> Dict[str, Any]:
        return dict(self.thresholds)

    @traceable(run_type="chain", name="04_analyze_results", tags=["analysis", "meeting-intelligence"])
    async def analyze(
        self,
        step_results: List[StepResult],
        strategy: Strategy,
        context: Optional[Dict[str, Any]] = None,
        allow_follow_up: bool = True,
    ) -> AnalysisResult:
        """
        Analyze a batch of step results. Never raises.

        With ``allow_follow_up=False`` the follow-up need is still reported but
        no follow-up steps are generated.
        """
        context = context or {}
        successful = [r for r in step_results if r.success]

        if len(successful) < self.thresholds["min_results_for_analysis"]:
            logger.info("Skipping analysis", successful=len(successful), total=len(step_results))
            return AnalysisResult(needs_follow_up=False, reason=INSUFFICIENT_RESULTS_REASON)

        aggregated = aggregate_results(successful)
        metrics = calculate_metrics(successful, aggregated)
        llm_analysis = await self._llm_analysis(successful, strategy, aggregated, context)

        confidence = _clamp(llm_analysis.get("confidence"))
        completeness = _clamp(llm_analysis.get("completeness"))
        analysis = AnalysisResult(
            needs_follow_up=False,
            reason="",
            confidence=confidence if confidence is not None else metrics["confidence"],
            completeness=completeness if completeness is not None else metrics["completeness"],
            insights=_string_list(llm_analysis.get("insights")),
            gaps=_string_list(llm_analysis.get("gaps")),
            recommendations=_string_list(llm_analysis.get("recommendations")),
            summary=llm_analysis.get("summary") or "Analysis completed",
        )

        reasons = self.evaluate_follow_up_need(analysis, strategy)
        analysis.needs_follow_up = bool(reasons)
        analysis.reason = "; ".join(reasons) if reasons else "Analysis appears complete"

        if analysis.needs_follow_up and allow_follow_up:
            analysis.follow_up_steps = await self.generate_follow_up_steps(analysis, strategy, context)

        logger.info(
            "Analysis complete",
            needs_follow_up=analysis.needs_follow_up,
            confidence=round(analysis.confidence, 2),
            completeness=round(analysis.completeness, 2),
            gaps=len(analysis.gaps),
            follow_up_steps=len(analysis.follow_up_steps),
        )
        return analysis

    async def _llm_analysis(
        self,
        results: List[StepResult],
        strategy: Strategy,
        aggregated: Dict[str, Any],
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        summary = [
            {
                "step": r.step_number,
                "type": r.query_type.value,
                "description": r.description,
                "resultCount": len(r.items),
                "success": r.success,
            }
            for r in results
        ]
        prompt = build_analysis_prompt(summary, strategy.to_wire(), aggregated)

        try:
            response = await self.llm_service.generate_response(
                prompt, {}, {**context, "system_prompt": get_system_prompt("analysis")}
            )
            return parse_json_object(response)
        except AnalysisParseError as e:
            logger.warning("Analysis response unparseable, using neutral analysis", error=str(e))
        except Exception as e:
            logger.warning("Analysis LLM call failed, using neutral analysis", error=repr(e))

        return {"summary": "Analysis unavailable", "completeness": NEUTRAL_COMPLETENESS}

    def evaluate_follow_up_need(self, analysis: AnalysisResult, strategy: Strategy) -> List[str]:
        """Reasons for a follow-up; empty when the analysis is sufficient."""
        reasons = []
        if analysis.completeness < self.thresholds["completeness_threshold"]:
            reasons.append(f"Low completeness score: {analysis.completeness:.2f}")
        if analysis.confidence < self.thresholds["confidence_threshold"]:
            reasons.append(f"Low confidence score: {analysis.confidence:.2f}")
        if analysis.gaps:
            reasons.append(f"{len(analysis.gaps)} gaps identified")
        if strategy.complexity == Complexity.HIGH and analysis.completeness < HIGH_COMPLEXITY_COMPLETENESS:
            reasons.append("High complexity strategy requires additional analysis")
        return reasons

    @traceable(run_type="chain", name="04b_generate_follow_ups", tags=["analysis", "meeting-intelligence"])
    async def generate_follow_up_steps(
        self,
        analysis: AnalysisResult,
        strategy: Strategy,
        context: Optional[Dict[str, Any]] = None,
    ) -> List[Step]:
        """
        Ask the LLM for follow-up steps closing the analysis gaps.

        At most ``max_follow_up_steps`` are returned, numbered after the
        strategy's existing steps. Any failure yields an empty list.
        """
        if not analysis.needs_follow_up:
            return []

        context = context or {}
        max_steps = self.thresholds["max_follow_up_steps"]
        prompt = build_follow_up_prompt(
            strategy.to_wire(),
            analysis.completeness,
            analysis.confidence,
            analysis.gaps,
            analysis.recommendations,
            max_steps,
        )

        try:
            response = await self.llm_service.generate_response(
                prompt, {}, {**context, "system_prompt": get_system_prompt("follow_up")}
            )
            raw_steps = parse_json_object(response).get("followUpSteps")
        except AnalysisParseError as e:
            logger.warning("Follow-up response unparseable", error=str(e))
            return []
        except Exception as e:
            logger.warning("Follow-up generation failed", error=repr(e))
            return []

        if not isinstance(raw_steps, list):
            return []

        start_at = max((step.step_number for step in strategy.steps), default=0) + 1
        return normalize_steps(raw_steps[:max_steps], start_at=start_at)


_analysis_service: Optional[IterativeAnalysisService] = None


def get_analysis_service() -> IterativeAnalysisService:
    """Get or create the global analysis service instance."""
    global _analysis_service
    if _analysis_service is None:
        _analysis_service = IterativeAnalysisService()
    return _analysis_service
