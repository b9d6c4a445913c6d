"""Iterative query pipeline built on LangGraph.

Nodes:
    01_plan       -> LLM strategy (keyword fallback)
    02_validate   -> static validation and auto-optimization
    03_execute    -> dependency-phased, concurrent graph queries
    04_analyze    -> completeness check, optional follow-up steps
    05_synthesize -> final answer

After ``04_analyze`` the graph loops back to ``03_execute`` while follow-up
steps are pending and fewer than ``max_iterations`` rounds have run.
"""

import asyncio
import re
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from langgraph.graph import END, StateGraph

from api.composer.synthesis import ResponseSynthesizer, get_synthesizer
from api.errors import StepExecutionError, StrategyValidationError
from api.execution.context_manager import ExecutionContextStore, get_context_store
from api.execution.iterative_analysis import IterativeAnalysisService, get_analysis_service
from api.observability.tracing import get_pipeline_monitor
from api.planning.query_planner import QueryPlanner, get_query_planner
from api.planning.strategy_validator import StrategyValidator, get_strategy_validator
from api.schemas.pipeline_state import PipelineState, create_initial_state
from api.schemas.strategy import QueryType, Step, StepResult
from api.tools.graph_tools import GraphQueryService, get_graph_query_service
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

STEP_REFERENCE_RE = re.compile(r"^step(\d+)_results$")

# Parameter names for ids/emails extracted from a dependency's rows
DEPENDENCY_KEYS = {
    QueryType.FIND_MEETINGS: ("meetingIds", "id"),
    QueryType.GET_PARTICIPANTS: ("participantEmails", "email"),
    QueryType.FIND_FREQUENT_COLLABORATORS: ("collaboratorEmails", "email"),
}


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


def plan_execution_phases(steps: List[Step], completed: Iterable[int] = ()) -> List[List[Step]]:
    """
    Group steps into phases whose dependencies are all in earlier phases.

    ``completed`` holds step numbers finished in earlier rounds. Steps that can
    never become ready are placed in a final phase, where they fail their
    dependency check.
    """
    done = set(completed)
    remaining = list(steps)
    phases: List[List[Step]] = []

    while remaining:
        ready = [step for step in remaining if all(dep in done for dep in step.dependencies)]
        if not ready:
            logger.warning("Unsatisfiable dependencies", steps=[s.step_number for s in remaining])
            phases.append(remaining)
            break
        phases.append(ready)
        ready_numbers = {step.step_number for step in ready}
        done |= ready_numbers
        remaining = [step for step in remaining if step.step_number not in ready_numbers]

    return phases


def extract_dependency_data(result: StepResult) -> Dict[str, Any]:
    """Parameters a dependent step receives from one successful dependency."""
    rows = result.items
    keys = DEPENDENCY_KEYS.get(result.query_type)
    if keys is None:
        return {"previousResults": rows}

    parameter, field = keys
    return {parameter: [row[field] for row in rows if isinstance(row, dict) and row.get(field)]}


class StepExecutor:
    """Runs strategy steps against the graph store."""

    def __init__(
        self,
        tools: Optional[GraphQueryService] = None,
        context_store: Optional[ExecutionContextStore] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._tools = tools
        self.context_store = context_store if context_store is not None else get_context_store()
        self.timeout_seconds = timeout_seconds or get_settings().graph_query_timeout_seconds

    @property
    def tools(self) -> GraphQueryService:
        if self._tools is None:
            self._tools = get_graph_query_service()
        return self._tools

    def resolve_step_parameters(
        self,
        step: Step,
        results_by_step: Dict[int, StepResult],
        context: Dict[str, Any],
    ) -> Dict[str, Any]:
        resolved = dict(step.parameters)

        for dep in step.dependencies:
            dep_result = results_by_step.get(dep)
            if dep_result is not None and dep_result.success:
                resolved.update(extract_dependency_data(dep_result))

        for key, value in list(resolved.items()):
            if not isinstance(value, str):
                continue
            match = STEP_REFERENCE_RE.match(value.strip())
            if match:
                ref = results_by_step.get(int(match.group(1)))
                if ref is not None and ref.success:
                    resolved[key] = ref.items

        user = context.get("user") or {}
        if user.get("email"):
            resolved["userEmail"] = user["email"]
        if user.get("name"):
            resolved["userName"] = user["name"]
        return resolved

    async def execute_step(
        self,
        step: Step,
        results_by_step: Dict[int, StepResult],
        context: Dict[str, Any],
    ) -> StepResult:
        """Execute one step. Failures and timeouts become ``success=False`` results."""
        start = time.time()

        failed_deps = [
            dep for dep in step.dependencies
            if results_by_step.get(dep) is None or not results_by_step[dep].success
        ]
        if failed_deps:
            error = StepExecutionError(step.step_number, f"dependency step(s) {failed_deps} did not succeed")
            logger.warning("Skipping step", step_number=step.step_number, failed_dependencies=failed_deps)
            return self._failure(step, step.parameters, error, start)

        parameters = self.resolve_step_parameters(step, results_by_step, context)
        try:
            payload = await asyncio.wait_for(
                self.tools.execute_query(step.query_type, parameters, context),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = StepExecutionError(step.step_number, f"graph query timed out after {self.timeout_seconds}s")
            logger.warning("Step timed out", step_number=step.step_number, query_type=step.query_type.value)
            return self._failure(step, parameters, error, start)
        except Exception as e:
            error = StepExecutionError(step.step_number, str(e))
            logger.error("Step failed", step_number=step.step_number, query_type=step.query_type.value, error=str(e))
            return self._failure(step, parameters, error, start)

        result = StepResult(
            step_number=step.step_number,
            query_type=step.query_type,
            description=step.description,
            success=True,
            results=payload,
            parameters=parameters,
            duration_ms=_elapsed_ms(start),
        )
        logger.info(
            "Step completed",
            step_number=step.step_number,
            query_type=step.query_type.value,
            results=len(result.items),
            duration_ms=result.duration_ms,
        )
        return result

    @staticmethod
    def _failure(step: Step, parameters: Dict[str, Any], error: StepExecutionError, start: float) -> StepResult:
        return StepResult(
            step_number=step.step_number,
            query_type=step.query_type,
            description=step.description,
            success=False,
            parameters=parameters,
            error=str(error),
            duration_ms=_elapsed_ms(start),
        )

    async def execute_steps(
        self,
        execution_id: str,
        steps: List[Step],
        previous_results: List[StepResult],
        context: Dict[str, Any],
    ) -> List[StepResult]:
        """
        Execute ``steps`` phase by phase; steps within a phase run concurrently.

        Returns new results in completion order. Each result is applied to the
        context store as soon as its step finishes.
        """
        results_by_step = {r.step_number: r for r in previous_results}
        completed: List[StepResult] = []

        async def run_and_record(step: Step) -> None:
            result = await self.execute_step(step, results_by_step, context)
            await self.context_store.update_step_result(execution_id, step.step_number, result)
            completed.append(result)

        phases = plan_execution_phases(steps, completed=results_by_step)
        for index, phase in enumerate(phases, 1):
            logger.debug("Executing phase", phase=index, steps=[s.step_number for s in phase])
            before = len(completed)
            await asyncio.gather(*(run_and_record(step) for step in phase))
            for result in completed[before:]:
                results_by_step[result.step_number] = result

        return completed


class QueryPipeline:
    """Plans, validates, executes, analyzes and answers one question."""

    def __init__(
        self,
        planner: Optional[QueryPlanner] = None,
        validator: Optional[StrategyValidator] = None,
        executor: Optional[StepExecutor] = None,
        analysis_service: Optional[IterativeAnalysisService] = None,
        synthesizer: Optional[ResponseSynthesizer] = None,
        context_store: Optional[ExecutionContextStore] = None,
        max_iterations: Optional[int] = None,
    ):
        self.planner = planner if planner is not None else get_query_planner()
        self.validator = validator if validator is not None else get_strategy_validator()
        self.context_store = context_store if context_store is not None else get_context_store()
        self.executor = executor if executor is not None else StepExecutor(context_store=self.context_store)
        self.analysis_service = analysis_service if analysis_service is not None else get_analysis_service()
        self.synthesizer = synthesizer if synthesizer is not None else get_synthesizer()
        self.max_iterations = max_iterations or get_settings().max_iterations
        self.monitor = get_pipeline_monitor()
        self.graph = self._build_graph()

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        graph = StateGraph(PipelineState)

        graph.add_node("01_plan", self._plan_node)
        graph.add_node("02_validate", self._validate_node)
        graph.add_node("03_execute", self._execute_node)
        graph.add_node("04_analyze", self._analyze_node)
        graph.add_node("05_synthesize", self._synthesize_node)

        graph.set_entry_point("01_plan")
        graph.add_edge("01_plan", "02_validate")
        graph.add_edge("02_validate", "03_execute")
        graph.add_edge("03_execute", "04_analyze")
        graph.add_conditional_edges(
            "04_analyze",
            self._decide_next,
            {"execute": "03_execute", "synthesize": "05_synthesize"},
        )
        graph.add_edge("05_synthesize", END)

        compiled = graph.compile()
        logger.info("Query pipeline compiled")
        return compiled

    async def _plan_node(self, state: PipelineState) -> Dict[str, Any]:
        """01_plan: produce a strategy (never fails short of total exhaustion)."""
        start = time.time()
        strategy = await self.planner.create_strategy(state.user_query, state.context)
        duration_ms = _elapsed_ms(start)
        self.monitor.record("planning", duration_ms)
        return {"strategy": strategy, "node_timings": state.add_timing("01_plan", duration_ms)}

    async def _validate_node(self, state: PipelineState) -> Dict[str, Any]:
        """02_validate: reject broken strategies, apply auto-optimizations."""
        start = time.time()
        validation = self.validator.validate(state.strategy)
        if not validation.is_valid:
            logger.warning("Strategy rejected", execution_id=state.execution_id, errors=validation.errors)
            raise StrategyValidationError(validation.errors, validation.warnings)

        strategy = self.validator.optimize_strategy(state.strategy, validation)
        await self.context_store.initialize(
            state.execution_id, strategy, {**state.context, "original_query": state.user_query}
        )

        duration_ms = _elapsed_ms(start)
        self.monitor.record("validation", duration_ms)
        return {
            "strategy": strategy,
            "validation": validation,
            "pending_steps": list(strategy.steps),
            "node_timings": state.add_timing("02_validate", duration_ms),
        }

    async def _execute_node(self, state: PipelineState) -> Dict[str, Any]:
        """03_execute: run pending steps against the graph store."""
        start = time.time()
        new_results = await self.executor.execute_steps(
            state.execution_id, state.pending_steps, state.step_results, state.context
        )
        errors = [r.error for r in new_results if not r.success and r.error]

        duration_ms = _elapsed_ms(start)
        self.monitor.record("execution", duration_ms)
        logger.info(
            "03_execute completed",
            execution_id=state.execution_id,
            iteration=state.iterations + 1,
            steps=len(new_results),
            failed=len(errors),
            duration_ms=duration_ms,
        )
        return {
            "step_results": state.step_results + new_results,
            "pending_steps": [],
            "iterations": state.iterations + 1,
            "errors": state.errors + errors,
            "node_timings": state.add_timing(f"03_execute_{state.iterations + 1}", duration_ms),
        }

    async def _analyze_node(self, state: PipelineState) -> Dict[str, Any]:
        """04_analyze: decide whether follow-up steps are needed."""
        start = time.time()
        analysis = await self.analysis_service.analyze(
            state.step_results,
            state.strategy,
            state.context,
            allow_follow_up=state.iterations < self.max_iterations,
        )

        update: Dict[str, Any] = {
            "analysis": analysis,
            "gaps": state.gaps + [gap for gap in analysis.gaps if gap not in state.gaps],
        }
        if analysis.needs_follow_up and analysis.follow_up_steps and state.iterations < self.max_iterations:
            strategy = state.strategy.model_copy(
                update={"steps": state.strategy.steps + analysis.follow_up_steps}
            )
            self.context_store.set_strategy(state.execution_id, strategy)
            update["strategy"] = strategy
            update["pending_steps"] = analysis.follow_up_steps
            logger.info(
                "Scheduling follow-up steps",
                execution_id=state.execution_id,
                steps=[s.step_number for s in analysis.follow_up_steps],
                reason=analysis.reason,
            )

        duration_ms = _elapsed_ms(start)
        self.monitor.record("analysis", duration_ms)
        update["node_timings"] = state.add_timing(f"04_analyze_{state.iterations}", duration_ms)
        return update

    def _decide_next(self, state: PipelineState) -> str:
        if state.pending_steps and state.iterations < self.max_iterations:
            return "execute"
        return "synthesize"

    async def _synthesize_node(self, state: PipelineState) -> Dict[str, Any]:
        """05_synthesize: write the final answer."""
        start = time.time()
        answer = await self.synthesizer.synthesize(
            state.user_query, state.strategy, state.step_results, state.analysis, state.context
        )
        await self.context_store.add_conversation_context(
            state.execution_id, {"query": state.user_query, "response": answer}
        )

        duration_ms = _elapsed_ms(start)
        self.monitor.record("synthesis", duration_ms)
        return {"final_answer": answer, "node_timings": state.add_timing("05_synthesize", duration_ms)}

    async def process_query(self, user_query: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Answer ``user_query``.

        Raises:
            StrategyValidationError: If the strategy is structurally invalid
            PlanningError: If no strategy could be produced at all
        """
        state = create_initial_state(user_query, context)
        logger.info("Starting query pipeline", execution_id=state.execution_id, query_preview=user_query[:50])

        try:
            result = await self.graph.ainvoke(state)
            if isinstance(result, dict):
                result = state.model_copy(update=result)
        except Exception as e:
            logger.error("Query pipeline failed", execution_id=state.execution_id, error=str(e))
            raise
        finally:
            if self.context_store.get_execution_context(state.execution_id) is not None:
                await self.context_store.finalize_execution(state.execution_id)

        duration_ms = _elapsed_ms(state.started_at)
        self.monitor.record("total", duration_ms)
        logger.info(
            "Query pipeline completed",
            execution_id=state.execution_id,
            iterations=result.iterations,
            steps=len(result.step_results),
            failed=len(result.failed_steps),
            duration_ms=duration_ms,
        )
        return self.build_response(result, duration_ms)

    @staticmethod
    def build_response(state: PipelineState, duration_ms: int) -> Dict[str, Any]:
        analysis = state.analysis
        return {
            "success": state.final_answer is not None,
            "response": state.final_answer,
            "metadata": {
                "executionId": state.execution_id,
                "iterations": state.iterations,
                "resultsCollected": sum(len(r.items) for r in state.step_results if r.success),
                "duration": duration_ms,
                "stepsExecuted": len(state.step_results),
                "failedSteps": state.failed_steps,
                "confidence": analysis.confidence if analysis else None,
                "completeness": analysis.completeness if analysis else None,
                "errors": state.errors,
                "gaps": state.gaps,
                "strategy": state.strategy.to_wire() if state.strategy else None,
                "completedAt": datetime.utcnow().isoformat(),
            },
        }


_pipeline: Optional[QueryPipeline] = None


def get_query_pipeline() -> QueryPipeline:
    """Get or create the global query pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = QueryPipeline()
    return _pipeline
