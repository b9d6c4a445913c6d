"""
Strategy validation and optimization.

``validate`` statically checks a strategy (model or raw mapping) for
structural defects and performance risks and proposes optimizations.
``optimize_strategy`` applies only the optimizations flagged ``autoApply``;
reordering is never automatic.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from api.schemas.strategy import (
    EXPENSIVE_QUERY_TYPES,
    FILTERING_QUERY_TYPES,
    TIMEFRAME_DEFAULT_TYPES,
    BottleneckStep,
    Optimization,
    PerformanceEstimate,
    QueryType,
    ResourceIntensiveStep,
    Strategy,
    StrategyMetadata,
    ValidationResult,
)
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

BASE_STEP_TIME_MS = {"fast": 100, "medium": 1000, "slow": 5000}
BOTTLENECK_THRESHOLD_MS = 5000

_EXPENSIVE = {t.value for t in EXPENSIVE_QUERY_TYPES}
_FILTERING = {t.value for t in FILTERING_QUERY_TYPES}
_TIMEFRAME_DEFAULT = {t.value for t in TIMEFRAME_DEFAULT_TYPES}
_CACHEABLE = {QueryType.GET_PARTICIPANTS.value, QueryType.FIND_FREQUENT_COLLABORATORS.value}

RuleResult = Dict[str, List[str]]


def _steps_of(strategy: Mapping[str, Any]) -> List[Dict[str, Any]]:
    steps = strategy.get("steps")
    if not isinstance(steps, list):
        return []
    return [step for step in steps if isinstance(step, dict)]


def _step_number(step: Dict[str, Any], index: int) -> int:
    number = step.get("stepNumber")
    return number if isinstance(number, int) and not isinstance(number, bool) else index + 1


def _parameters(step: Dict[str, Any]) -> Dict[str, Any]:
    parameters = step.get("parameters")
    return parameters if isinstance(parameters, dict) else {}


def has_time_filter(step: Dict[str, Any]) -> bool:
    parameters = _parameters(step)
    return bool(parameters.get("timeframe") or parameters.get("startDate"))


def is_resource_intensive(step: Dict[str, Any]) -> bool:
    return (
        step.get("queryType") in _EXPENSIVE
        or step.get("estimatedTime") == "slow"
        or not has_time_filter(step)
    )


def estimate_step_time(step: Dict[str, Any]) -> float:
    """Estimated step duration in ms."""
    time_ms = float(BASE_STEP_TIME_MS.get(step.get("estimatedTime"), BASE_STEP_TIME_MS["medium"]))
    if is_resource_intensive(step):
        time_ms *= 2
    if not has_time_filter(step):
        time_ms *= 1.5
    return time_ms


def _bottleneck_reason(step: Dict[str, Any]) -> str:
    if step.get("queryType") in _EXPENSIVE:
        return "Resource-intensive query type"
    if not has_time_filter(step):
        return "Missing timeframe filter"
    return "Complex analysis operation"


def _resource_intensive_reason(step: Dict[str, Any]) -> str:
    if str(step.get("queryType", "")).startswith("analyze_") or step.get("queryType") in _EXPENSIVE:
        return "Complex analysis operation"
    if not has_time_filter(step):
        return "No timeframe filtering"
    return "Large dataset operation"


class StrategyValidator:
    """Validates strategies and applies safe automatic optimizations."""

    def __init__(self, max_steps: Optional[int] = None, max_slow_queries: Optional[int] = None):
        settings = get_settings()
        self.max_steps = max_steps if max_steps is not None else settings.max_steps
        self.max_slow_queries = max_slow_queries if max_slow_queries is not None else settings.max_slow_queries

        self.validation_rules: Dict[str, Callable[[Dict[str, Any]], RuleResult]] = {
            "required_fields": self._check_required_fields,
            "step_structure": self._check_step_structure,
            "performance_check": self._check_performance,
            "query_type_validation": self._check_query_types,
        }
        self.optimization_rules: Dict[str, Callable[[Dict[str, Any]], List[Optimization]]] = {
            "parallelization": self._optimize_parallelization,
            "default_timeframes": self._optimize_default_timeframes,
            "query_order": self._optimize_query_order,
            "resource_usage": self._optimize_resource_usage,
        }

    def validate(self, strategy: Union[Strategy, Mapping[str, Any], None]) -> ValidationResult:
        """
        Validate a strategy. Never raises.

        All rules run independently; their errors, warnings and suggestions
        are concatenated. The result is valid only when there are no errors.
        """
        if isinstance(strategy, Strategy):
            strategy = strategy.to_wire()
        if not isinstance(strategy, Mapping):
            return ValidationResult(is_valid=False, errors=["Strategy must be an object"])

        strategy = dict(strategy)
        result = ValidationResult()

        try:
            for rule in self.validation_rules.values():
                outcome = rule(strategy)
                result.errors.extend(outcome.get("errors", []))
                result.warnings.extend(outcome.get("warnings", []))
                result.suggestions.extend(outcome.get("suggestions", []))

            for rule in self.optimization_rules.values():
                result.optimizations.extend(rule(strategy))

            result.estimated_performance = self.estimate_performance(strategy)
        except Exception as e:
            logger.error("Strategy validation failed", error=str(e))
            return ValidationResult(is_valid=False, errors=[f"Validation process failed: {e}"])

        result.is_valid = not result.errors
        logger.info(
            "Strategy validation complete",
            is_valid=result.is_valid,
            errors=len(result.errors),
            warnings=len(result.warnings),
            optimizations=len(result.optimizations),
        )
        return result

    # ------------------------------------------------------------------
    # Validation rules
    # ------------------------------------------------------------------

    def _check_required_fields(self, strategy: Dict[str, Any]) -> RuleResult:
        errors, warnings = [], []
        if not isinstance(strategy.get("steps"), list):
            errors.append("Strategy must contain a steps array")
        elif not strategy["steps"]:
            errors.append("Strategy must contain at least one step")
        if not strategy.get("analysis"):
            warnings.append("Strategy should include an analysis field")
        if not strategy.get("expectedOutcome"):
            warnings.append("Strategy should specify expectedOutcome")
        return {"errors": errors, "warnings": warnings}

    def _check_step_structure(self, strategy: Dict[str, Any]) -> RuleResult:
        errors, warnings = [], []
        steps = strategy.get("steps")
        if not isinstance(steps, list):
            return {}

        for index, step in enumerate(steps):
            if not isinstance(step, dict):
                errors.append(f"Step {index + 1} must be an object")
                continue

            number = _step_number(step, index)
            if not step.get("queryType"):
                errors.append(f"Step {index + 1} missing queryType")
            if not step.get("description"):
                warnings.append(f"Step {index + 1} missing description")
            if "parameters" not in step or not isinstance(step.get("parameters"), dict):
                warnings.append(f"Step {index + 1} missing parameters")

            dependencies = step.get("dependencies") or []
            if not isinstance(dependencies, list):
                errors.append(f"Step {number} dependencies must be a list")
                continue
            for dep in dependencies:
                if not isinstance(dep, int) or isinstance(dep, bool) or dep < 1:
                    errors.append(f"Step {number} has invalid dependency reference {dep!r}")
                elif dep >= number:
                    errors.append(
                        f"Step {number} has invalid dependency on step {dep} (circular or forward dependency)"
                    )

        return {"errors": errors, "warnings": warnings}

    def _check_performance(self, strategy: Dict[str, Any]) -> RuleResult:
        warnings, suggestions = [], []
        steps = _steps_of(strategy)

        if len(steps) > self.max_steps:
            warnings.append(
                f"Strategy has {len(steps)} steps, consider consolidating (max recommended: {self.max_steps})"
            )

        slow = sum(1 for step in steps if step.get("estimatedTime") == "slow")
        if slow > self.max_slow_queries:
            warnings.append(
                f"Strategy has {slow} slow queries, consider optimization (max recommended: {self.max_slow_queries})"
            )

        has_timeframe = any(
            _parameters(step).get("timeframe") or _parameters(step).get("startDate") or _parameters(step).get("endDate")
            for step in steps
        )
        if steps and not has_timeframe:
            suggestions.append("Consider adding timeframe filters to improve performance and relevance")

        return {"warnings": warnings, "suggestions": suggestions}

    def _check_query_types(self, strategy: Dict[str, Any]) -> RuleResult:
        # Strict on purpose: the planner coerces unknown types, the validator rejects them.
        errors = []
        for index, step in enumerate(_steps_of(strategy)):
            query_type = step.get("queryType")
            if query_type and not QueryType.is_known(query_type):
                errors.append(f"Step {index + 1} has invalid queryType: {query_type}")
        return {"errors": errors}

    # ------------------------------------------------------------------
    # Optimization rules
    # ------------------------------------------------------------------

    def _optimize_parallelization(self, strategy: Dict[str, Any]) -> List[Optimization]:
        steps = _steps_of(strategy)
        independent = [_step_number(step, i) for i, step in enumerate(steps) if not step.get("dependencies")]
        if len(independent) <= 1:
            return []
        return [
            Optimization(
                type="parallelization",
                description=f"Steps {', '.join(map(str, independent))} can be executed in parallel",
                impact="high",
                auto_apply=True,
                steps=independent,
            )
        ]

    def _optimize_default_timeframes(self, strategy: Dict[str, Any]) -> List[Optimization]:
        optimizations = []
        for index, step in enumerate(_steps_of(strategy)):
            if step.get("queryType") in _TIMEFRAME_DEFAULT and not has_time_filter(step):
                number = _step_number(step, index)
                optimizations.append(
                    Optimization(
                        type="performance",
                        description=f"Add default timeframe filter to step {number}",
                        impact="medium",
                        auto_apply=True,
                        step_number=number,
                        parameter="timeframe",
                        value="recent",
                    )
                )
        return optimizations

    def _optimize_query_order(self, strategy: Dict[str, Any]) -> List[Optimization]:
        optimizations = []
        steps = _steps_of(strategy)
        for index in range(len(steps) - 1):
            current, following = steps[index], steps[index + 1]
            if current.get("queryType") in _EXPENSIVE and following.get("queryType") in _FILTERING:
                current_number = _step_number(current, index)
                next_number = _step_number(following, index + 1)
                optimizations.append(
                    Optimization(
                        type="query_order",
                        description=(
                            f"Consider moving filtering step {next_number} before expensive step {current_number}"
                        ),
                        impact="medium",
                        auto_apply=False,
                        suggestion=f"Reorder steps {current_number} and {next_number}",
                    )
                )
        return optimizations

    def _optimize_resource_usage(self, strategy: Dict[str, Any]) -> List[Optimization]:
        steps = _steps_of(strategy)
        intensive = [_step_number(step, i) for i, step in enumerate(steps) if is_resource_intensive(step)]
        if len(intensive) <= 2:
            return []
        return [
            Optimization(
                type="resource_usage",
                description="Multiple resource-intensive steps detected, consider batching or caching",
                impact="high",
                auto_apply=False,
                steps=intensive,
            )
        ]

    # ------------------------------------------------------------------
    # Performance estimation
    # ------------------------------------------------------------------

    def estimate_performance(self, strategy: Dict[str, Any]) -> PerformanceEstimate:
        estimate = PerformanceEstimate(complexity=str(strategy.get("complexity") or "medium"))

        for index, step in enumerate(_steps_of(strategy)):
            number = _step_number(step, index)
            step_time = estimate_step_time(step)
            estimate.estimated_total_time += step_time

            if step_time > BOTTLENECK_THRESHOLD_MS:
                estimate.bottleneck_steps.append(
                    BottleneckStep(step_number=number, estimated_time=step_time, reason=_bottleneck_reason(step))
                )
            if not step.get("dependencies"):
                estimate.parallelizable.append(number)
            if is_resource_intensive(step):
                estimate.resource_intensive.append(
                    ResourceIntensiveStep(step_number=number, reason=_resource_intensive_reason(step))
                )

        return estimate

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def optimize_strategy(self, strategy: Strategy, validation: ValidationResult) -> Strategy:
        """
        Return a deep copy of ``strategy`` with auto-apply optimizations applied.

        Advisory optimizations (``autoApply=false``) are left untouched. If
        anything goes wrong the original strategy is returned unchanged.
        """
        try:
            optimized = strategy.model_copy(deep=True)
            applied = [opt for opt in validation.optimizations if opt.auto_apply]

            for optimization in applied:
                self._apply_optimization(optimized, optimization)

            optimized.performance_hints = self.generate_performance_hints(optimized)
            optimized.metadata = StrategyMetadata(
                optimized=True,
                optimization_count=len(applied),
                estimated_performance=validation.estimated_performance.to_wire(),
                validation_timestamp=datetime.now(timezone.utc).isoformat(),
            )
        except Exception as e:
            logger.error("Strategy optimization failed, using original strategy", error=str(e))
            return strategy

        logger.info("Strategy optimized", optimization_count=optimized.metadata.optimization_count)
        return optimized

    def _apply_optimization(self, strategy: Strategy, optimization: Optimization) -> None:
        if optimization.type == "performance" and optimization.parameter and optimization.step_number:
            step = strategy.get_step(optimization.step_number)
            if step is not None:
                step.parameters[optimization.parameter] = optimization.value
        elif optimization.type == "parallelization":
            strategy.execution["parallelSteps"] = list(optimization.steps or [])

    def generate_performance_hints(self, strategy: Strategy) -> List[str]:
        hints = []
        if strategy.parallel_steps:
            hints.append(
                f"Execute steps {', '.join(map(str, strategy.parallel_steps))} in parallel for better performance"
            )

        steps = [step.to_wire() for step in strategy.steps]
        if any(step.get("queryType") in _CACHEABLE for step in steps):
            hints.append("Consider caching participant and collaborator data for repeated queries")
        if sum(1 for step in steps if is_resource_intensive(step)) > 1:
            hints.append("Space out resource-intensive queries to avoid overwhelming the database")
        return hints


_strategy_validator: Optional[StrategyValidator] = None


def get_strategy_validator() -> StrategyValidator:
    """Get or create the global strategy validator instance."""
    global _strategy_validator
    if _strategy_validator is None:
        _strategy_validator = StrategyValidator()
    return _strategy_validator
