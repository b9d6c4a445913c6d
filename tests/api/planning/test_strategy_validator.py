"""Tests for strategy validation, performance estimation and optimization."""

import pytest

from api.planning.strategy_validator import StrategyValidator, estimate_step_time
from api.schemas.strategy import QueryType, Strategy


@pytest.fixture
def validator():
    return StrategyValidator()


def wire_step(number, query_type="find_meetings", dependencies=None, estimated_time="fast", parameters=None):
    return {
        "stepNumber": number,
        "description": f"Step {number}",
        "queryType": query_type,
        "parameters": parameters if parameters is not None else {"timeframe": "this_week"},
        "dependencies": dependencies or [],
        "estimatedTime": estimated_time,
    }


def wire_strategy(steps, **extra):
    return {"analysis": "Plan", "complexity": "medium", "expectedOutcome": "Answer", "steps": steps, **extra}


class TestStructuralValidation:
    def test_circular_dependency_rejected(self, validator):
        result = validator.validate({"steps": [
            {"stepNumber": 1, "dependencies": [2]},
            {"stepNumber": 2, "dependencies": [1]},
        ]})

        assert result.is_valid is False
        assert any("circular or forward dependency" in error for error in result.errors)

    @pytest.mark.parametrize("bad_dependency", [[1], [2], [3]])
    def test_dependencies_must_point_backwards(self, validator, bad_dependency):
        steps = [wire_step(1), wire_step(2, dependencies=bad_dependency)]
        if bad_dependency == [1]:
            steps[0]["dependencies"] = [1]

        result = validator.validate(wire_strategy(steps))

        assert result.is_valid is False
        assert any("circular or forward dependency" in error for error in result.errors)

    def test_backward_dependencies_accepted(self, validator):
        result = validator.validate(wire_strategy([
            wire_step(1),
            wire_step(2, "get_participants", dependencies=[1]),
            wire_step(3, "find_documents", dependencies=[1, 2]),
        ]))

        assert result.is_valid is True
        assert result.errors == []

    @pytest.mark.parametrize("strategy", [None, "steps", 42, ["a"]])
    def test_non_object_strategy(self, validator, strategy):
        result = validator.validate(strategy)

        assert result.is_valid is False
        assert result.errors == ["Strategy must be an object"]

    def test_missing_and_empty_steps(self, validator):
        assert "Strategy must contain a steps array" in validator.validate({"analysis": "x"}).errors
        assert "Strategy must contain at least one step" in validator.validate({"steps": []}).errors

    def test_missing_query_type_and_unknown_query_type(self, validator):
        result = validator.validate(wire_strategy([
            {"stepNumber": 1, "description": "a", "parameters": {}},
            wire_step(2, "teleport_meetings"),
        ]))

        assert "Step 1 missing queryType" in result.errors
        assert "Step 2 has invalid queryType: teleport_meetings" in result.errors

    def test_missing_optional_fields_are_warnings(self, validator):
        result = validator.validate({"steps": [{"stepNumber": 1, "queryType": "find_meetings"}]})

        assert result.is_valid is True
        assert "Strategy should include an analysis field" in result.warnings
        assert "Strategy should specify expectedOutcome" in result.warnings
        assert "Step 1 missing description" in result.warnings
        assert "Step 1 missing parameters" in result.warnings

    def test_accepts_strategy_model(self, validator, step_factory, strategy_factory):
        result = validator.validate(strategy_factory([step_factory(1), step_factory(2, dependencies=[1])]))

        assert result.is_valid is True


class TestPerformanceChecks:
    def test_many_slow_steps_warn_on_count_and_slowness(self, validator):
        steps = [wire_step(n, estimated_time="slow") for n in range(1, 13)]

        result = validator.validate(wire_strategy(steps))

        assert "Strategy has 12 steps, consider consolidating (max recommended: 10)" in result.warnings
        assert "Strategy has 12 slow queries, consider optimization (max recommended: 3)" in result.warnings
        assert result.is_valid is True

    def test_suggests_timeframe_when_none_present(self, validator):
        result = validator.validate(wire_strategy([wire_step(1, "find_documents", parameters={"query": "budget"})]))

        assert "Consider adding timeframe filters to improve performance and relevance" in result.suggestions

    def test_estimate_step_time(self):
        assert estimate_step_time(wire_step(1, estimated_time="fast")) == 100
        assert estimate_step_time(wire_step(1, "analyze_topic_trends", estimated_time="medium")) == 2000
        assert estimate_step_time(wire_step(1, estimated_time="slow", parameters={})) == 15000

    def test_performance_estimate(self, validator):
        result = validator.validate(wire_strategy([
            wire_step(1),
            wire_step(2, "analyze_collaboration", dependencies=[1], estimated_time="slow", parameters={}),
        ]))

        estimate = result.estimated_performance
        assert estimate.estimated_total_time == 100 + 15000
        assert [b.step_number for b in estimate.bottleneck_steps] == [2]
        assert estimate.bottleneck_steps[0].reason == "Resource-intensive query type"
        assert estimate.parallelizable == [1]
        assert [r.step_number for r in estimate.resource_intensive] == [2]


class TestOptimizations:
    def test_parallelization_lists_independent_steps(self, validator):
        result = validator.validate(wire_strategy([
            wire_step(1),
            wire_step(2, "find_documents"),
            wire_step(3, "get_participants", dependencies=[1]),
        ]))

        parallel = [opt for opt in result.optimizations if opt.type == "parallelization"]
        assert len(parallel) == 1
        assert parallel[0].steps == [1, 2]
        assert parallel[0].auto_apply is True

    def test_default_timeframe_optimization(self, validator):
        result = validator.validate(wire_strategy([wire_step(1, parameters={})]))

        performance = [opt for opt in result.optimizations if opt.type == "performance"]
        assert len(performance) == 1
        assert performance[0].step_number == 1
        assert performance[0].parameter == "timeframe"
        assert performance[0].value == "recent"
        assert performance[0].auto_apply is True

    def test_query_order_is_advisory(self, validator):
        result = validator.validate(wire_strategy([
            wire_step(1, "analyze_topic_trends"),
            wire_step(2, "find_meetings"),
        ]))

        order = [opt for opt in result.optimizations if opt.type == "query_order"]
        assert len(order) == 1
        assert order[0].auto_apply is False

    def test_resource_usage_needs_more_than_two_intensive_steps(self, validator):
        two = validator.validate(wire_strategy([wire_step(n, estimated_time="slow") for n in (1, 2)]))
        three = validator.validate(wire_strategy([wire_step(n, estimated_time="slow") for n in (1, 2, 3)]))

        assert not [opt for opt in two.optimizations if opt.type == "resource_usage"]
        assert [opt for opt in three.optimizations if opt.type == "resource_usage"][0].steps == [1, 2, 3]


class TestOptimizeStrategy:
    def test_applies_auto_optimizations_to_a_copy(self, validator, step_factory, strategy_factory):
        strategy = strategy_factory([
            step_factory(1, parameters={}),
            step_factory(2, QueryType.FIND_DOCUMENTS),
            step_factory(3, QueryType.GET_PARTICIPANTS, dependencies=[1]),
        ])
        validation = validator.validate(strategy)

        optimized = validator.optimize_strategy(strategy, validation)

        assert optimized is not strategy
        assert optimized.steps[0].parameters["timeframe"] == "recent"
        assert strategy.steps[0].parameters == {}
        assert optimized.execution["parallelSteps"] == [1, 2]
        assert optimized.metadata.optimized is True
        assert optimized.metadata.optimization_count == 2
        assert optimized.metadata.validation_timestamp
        assert "Execute steps 1, 2 in parallel for better performance" in optimized.performance_hints
        assert "Consider caching participant and collaborator data for repeated queries" in optimized.performance_hints

    def test_advisory_optimizations_never_reorder(self, validator, step_factory, strategy_factory):
        strategy = strategy_factory([
            step_factory(1, QueryType.ANALYZE_TOPIC_TRENDS),
            step_factory(2, QueryType.FIND_MEETINGS, dependencies=[1]),
        ])

        optimized = validator.optimize_strategy(strategy, validator.validate(strategy))

        assert [s.query_type for s in optimized.steps] == [QueryType.ANALYZE_TOPIC_TRENDS, QueryType.FIND_MEETINGS]
        assert optimized.metadata.optimization_count == 0

    def test_returns_original_on_failure(self, validator, step_factory, strategy_factory):
        strategy = strategy_factory([step_factory(1)])
        validation = validator.validate(strategy)

        optimized = validator.optimize_strategy(strategy, None)

        assert optimized is strategy
        assert validation.is_valid is True

    def test_wire_format_round_trips_into_model(self, validator, step_factory, strategy_factory):
        strategy = strategy_factory([step_factory(1), step_factory(2)])
        optimized = validator.optimize_strategy(strategy, validator.validate(strategy))

        wire = optimized.to_wire()

        assert wire["execution"] == {"parallelSteps": [1, 2]}
        assert wire["metadata"]["optimizationCount"] == 1
        assert Strategy.model_validate(wire).parallel_steps == [1, 2]
