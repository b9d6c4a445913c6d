"""Final answer synthesis for the meeting intelligence pipeline."""

from typing import Any, Dict, List, Optional

import structlog
from langsmith import traceable

from api.composer.prompts import build_synthesis_prompt, get_system_prompt
from api.llm import LLMService, get_llm_service
from api.schemas.strategy import AnalysisResult, StepResult, Strategy

logger = structlog.get_logger(__name__)

NO_RESULTS_ANSWER = (
    "I couldn't find anything in your calendar data that answers this question. "
    "Try a different timeframe, or run calendar processing to refresh your data."
)
MAX_LISTED_TITLES = 5


def _labels(rows: List[Any]) -> List[str]:
    labels = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        label = row.get("title") or row.get("name") or row.get("email")
        if label:
            labels.append(str(label))
    return labels


def build_fallback_answer(strategy: Strategy, results: List[StepResult]) -> str:
    """Deterministic summary of step results, used when the LLM is unavailable."""
    successful = [r for r in results if r.success and r.items]
    if not successful:
        return NO_RESULTS_ANSWER

    lines = [f"Here is what I found ({strategy.analysis})." if strategy.analysis else "Here is what I found."]
    for result in successful:
        labels = _labels(result.items)
        line = f"- {result.description or result.query_type.value}: {len(result.items)} result(s)"
        if labels:
            shown = ", ".join(labels[:MAX_LISTED_TITLES])
            more = len(labels) - MAX_LISTED_TITLES
            line += f" ({shown}{f' and {more} more' if more > 0 else ''})"
        lines.append(line)

    failed = len([r for r in results if not r.success])
    if failed:
        lines.append(f"{failed} quer{'y' if failed == 1 else 'ies'} could not be completed.")
    return "\n".join(lines)


class ResponseSynthesizer:
    """Turns collected step results into the user-facing answer."""

    def __init__(self, llm_service: Optional[LLMService] = None):
        self._llm_service = llm_service

    @property
    def llm_service(self) -> LLMService:
        if self._llm_service is None:
            self._llm_service = get_llm_service()
        return self._llm_service

    @traceable(run_type="chain", name="05_synthesize_answer", tags=["synthesis", "meeting-intelligence"])
    async def synthesize(
        self,
        user_query: str,
        strategy: Strategy,
        results: List[StepResult],
        analysis: Optional[AnalysisResult] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Answer ``user_query``. Falls back to a deterministic summary on any LLM failure."""
        context = context or {}
        successful = [r for r in results if r.success]
        if not any(r.items for r in successful):
            return NO_RESULTS_ANSWER

        prompt = build_synthesis_prompt(
            user_query,
            strategy.analysis,
            [r.to_wire() for r in successful],
            insights=analysis.insights if analysis else None,
            gaps=analysis.gaps if analysis else None,
        )

        try:
            answer = await self.llm_service.generate_response(
                prompt, {}, {**context, "system_prompt": get_system_prompt("synthesis")}
            )
        except Exception as e:
            logger.warning("Synthesis LLM call failed, using fallback summary", error=repr(e))
            return build_fallback_answer(strategy, results)

        answer = (answer or "").strip()
        if not answer:
            logger.warning("Synthesis returned an empty answer, using fallback summary")
            return build_fallback_answer(strategy, results)
        return answer


_synthesizer: Optional[ResponseSynthesizer] = None


def get_synthesizer() -> ResponseSynthesizer:
    """Get or create the global synthesizer instance."""
    global _synthesizer
    if _synthesizer is None:
        _synthesizer = ResponseSynthesizer()
    return _synthesizer
