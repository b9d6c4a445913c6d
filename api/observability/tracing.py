"""
Observability utilities for the meeting intelligence pipeline.

Provides LangSmith tracing setup, a LangChain callback handler that logs every
LLM call with timing and token usage, and an in-process monitor for pipeline
stage latencies.
"""

import os
import time
from typing import Any, Dict, Optional

import structlog
from langchain_core.callbacks import AsyncCallbackHandler
from langchain_core.outputs import LLMResult

logger = structlog.get_logger(__name__)


class LLMCallLogger(AsyncCallbackHandler):
    """Logs LLM calls made by the planner, analysis and synthesis stages."""

    def __init__(self, component: str = "intelligence"):
        super().__init__()
        self.component = component
        self.start_times: Dict[str, float] = {}

    async def on_chat_model_start(self, serialized: Dict[str, Any], messages: Any, **kwargs: Any) -> None:
        run_id = kwargs.get("run_id")
        if run_id:
            self.start_times[str(run_id)] = time.time()

        logger.debug(
            "LLM call started",
            component=self.component,
            model=(serialized or {}).get("name", "unknown"),
            run_id=str(run_id) if run_id else None,
        )

    async def on_llm_end(self, response: LLMResult, **kwargs: Any) -> None:
        run_id = kwargs.get("run_id")
        started = self.start_times.pop(str(run_id), None) if run_id else None
        token_usage = response.llm_output.get("token_usage", {}) if response.llm_output else {}

        logger.info(
            "LLM call completed",
            component=self.component,
            duration_ms=int((time.time() - started) * 1000) if started else None,
            total_tokens=token_usage.get("total_tokens", 0),
            prompt_tokens=token_usage.get("prompt_tokens", 0),
            completion_tokens=token_usage.get("completion_tokens", 0),
        )

    async def on_llm_error(self, error: BaseException, **kwargs: Any) -> None:
        run_id = kwargs.get("run_id")
        started = self.start_times.pop(str(run_id), None) if run_id else None

        logger.warning(
            "LLM call failed",
            component=self.component,
            error=str(error),
            duration_ms=int((time.time() - started) * 1000) if started else None,
        )


def setup_langsmith_tracing() -> Optional[str]:
    """Enable LangSmith tracing when configured; returns the project name."""
    if os.getenv("LANGCHAIN_TRACING_V2", "false").lower() != "true":
        logger.info("LangSmith tracing disabled")
        return None

    if not os.getenv("LANGCHAIN_API_KEY"):
        logger.warning("LANGCHAIN_API_KEY not set - LangSmith tracing will not work")
        return None

    project = os.getenv("LANGCHAIN_PROJECT", "meetprep-intelligence")
    os.environ["LANGCHAIN_PROJECT"] = project
    logger.info("LangSmith tracing enabled", project=project)
    return project


class PipelineMonitor:
    """Collects per-stage latencies and planner fallback counts."""

    STAGES = ("planning", "validation", "execution", "analysis", "synthesis", "total")

    def __init__(self):
        self.metrics: Dict[str, list] = {stage: [] for stage in self.STAGES}
        self.fallback_strategies = 0

    def record(self, stage: str, latency_ms: int) -> None:
        self.metrics.setdefault(stage, []).append(latency_ms)

    def record_fallback(self) -> None:
        self.fallback_strategies += 1

    def get_performance_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {"fallback_strategies": self.fallback_strategies}
        for stage, values in self.metrics.items():
            if values:
                ordered = sorted(values)
                summary[stage] = {
                    "count": len(values),
                    "avg": sum(values) / len(values),
                    "min": ordered[0],
                    "max": ordered[-1],
                    "p95": ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)],
                }
            else:
                summary[stage] = {"count": 0}
        return summary

    def reset_metrics(self) -> None:
        for key in self.metrics:
            self.metrics[key] = []
        self.fallback_strategies = 0


_pipeline_monitor: Optional[PipelineMonitor] = None


def get_pipeline_monitor() -> PipelineMonitor:
    """Get or create the global pipeline monitor instance."""
    global _pipeline_monitor
    if _pipeline_monitor is None:
        _pipeline_monitor = PipelineMonitor()
    return _pipeline_monitor


def initialize_observability() -> Dict[str, Any]:
    """Initialize tracing and monitoring; called once at application startup."""
    project = setup_langsmith_tracing()
    monitor = get_pipeline_monitor()

    logger.info("Observability initialization completed", langsmith_project=project)
    return {"langsmith_project": project, "pipeline_monitor": monitor}
