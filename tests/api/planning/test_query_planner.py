"""Tests for the LLM query planner and its keyword fallback."""

import json
from unittest.mock import patch

import pytest

from api.errors import PlanningContractViolation, PlanningError
from api.observability.tracing import get_pipeline_monitor
from api.planning.query_planner import (
    QueryPlanner,
    classify_unparseable_response,
    estimate_complexity,
    generate_optimizations,
    normalize_steps,
)
from api.schemas.strategy import Complexity, EstimatedTime, QueryType


def llm_strategy(**overrides):
    strategy = {
        "analysis": "Find the meetings, then their participants",
        "complexity": "medium",
        "steps": [
            {
                "stepNumber": 1,
                "description": "Find this week's meetings",
                "queryType": "find_meetings",
                "parameters": {"timeframe": "this_week"},
                "dependencies": [],
                "estimatedTime": "fast",
            },
            {
                "stepNumber": 2,
                "description": "Get participants",
                "queryType": "get_participants",
                "parameters": {"meetingIds": "step1_results"},
                "dependencies": [1],
                "estimatedTime": "fast",
            },
        ],
        "expectedOutcome": "Meetings with participants",
        "followUpQuestions": ["Anything else?"],
    }
    strategy.update(overrides)
    return strategy


@pytest.fixture
def planner(mock_llm):
    return QueryPlanner(llm_service=mock_llm)


class TestCreateStrategy:
    @pytest.mark.asyncio
    async def test_uses_llm_strategy(self, planner, mock_llm, user_context):
        mock_llm.generate_response.return_value = json.dumps(llm_strategy())

        strategy = await planner.create_strategy("Who was in my meetings this week?", user_context)

        assert [s.query_type for s in strategy.steps] == [QueryType.FIND_MEETINGS, QueryType.GET_PARTICIPANTS]
        assert strategy.steps[1].dependencies == [1]
        assert strategy.follow_up_questions == ["Anything else?"]
        assert get_pipeline_monitor().get_performance_summary()["fallback_strategies"] == 0

    @pytest.mark.asyncio
    async def test_passes_planning_system_prompt(self, planner, mock_llm, user_context):
        mock_llm.generate_response.return_value = json.dumps(llm_strategy())

        await planner.create_strategy("What's on today?", user_context)

        context = mock_llm.generate_response.call_args.args[2]
        assert "system_prompt" in context
        assert "JSON" in context["system_prompt"]

    @pytest.mark.asyncio
    async def test_accepts_fenced_json(self, planner, mock_llm, user_context):
        mock_llm.generate_response.return_value = "```json\n" + json.dumps(llm_strategy()) + "\n```"

        strategy = await planner.create_strategy("meetings this week", user_context)

        assert len(strategy.steps) == 2

    @pytest.mark.asyncio
    async def test_conversational_response_falls_back(self, planner, mock_llm, user_context):
        mock_llm.generate_response.return_value = "I looked at your calendar and found 3 meetings."

        strategy = await planner.create_strategy("What meetings do I have this week?", user_context)

        assert len(strategy.steps) == 1
        step = strategy.steps[0]
        assert step.query_type == QueryType.FIND_MEETINGS
        assert step.parameters == {"timeframe": "this_week", "userEmail": "alice@example.com"}
        assert strategy.analysis == "Simple strategy for: What meetings do I have this week?"
        assert get_pipeline_monitor().get_performance_summary()["fallback_strategies"] == 1

    @pytest.mark.asyncio
    async def test_llm_exception_falls_back(self, planner, mock_llm, user_context):
        mock_llm.generate_response.side_effect = RuntimeError("upstream down")

        strategy = await planner.create_strategy("documents about hiring", user_context)

        assert strategy.steps[0].query_type == QueryType.FIND_DOCUMENTS

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"analysis": "x", "complexity": "low", "steps": []},
            {"analysis": "x", "complexity": "low"},
            {"complexity": "low", "steps": [{"queryType": "find_meetings"}]},
        ],
    )
    async def test_contract_violations_fall_back(self, planner, mock_llm, user_context, payload):
        mock_llm.generate_response.return_value = json.dumps(payload)

        strategy = await planner.create_strategy("my schedule", user_context)

        assert strategy.analysis.startswith("Simple strategy for:")

    @pytest.mark.asyncio
    async def test_fallback_failure_raises_planning_error(self, planner, mock_llm, user_context):
        mock_llm.generate_response.return_value = "not json"

        with patch.object(planner, "create_fallback_strategy", side_effect=RuntimeError("broken")):
            with pytest.raises(PlanningError):
                await planner.create_strategy("anything", user_context)


class TestParseStrategyResponse:
    def test_non_json_raises_violation_with_raw_text(self, planner):
        with pytest.raises(PlanningContractViolation) as exc_info:
            planner.parse_strategy_response("Here is your plan")

        assert exc_info.value.raw_response == "Here is your plan"

    def test_non_string_raises_violation(self, planner):
        with pytest.raises(PlanningContractViolation):
            planner.parse_strategy_response(None)


class TestClassifyUnparseableResponse:
    @pytest.mark.parametrize(
        "text,kind",
        [
            ("", "empty"),
            ("I found 3 meetings", "conversational"),
            ("Sure, here you go", "prose"),
            ('{"steps": [', "malformed_json"),
        ],
    )
    def test_labels(self, text, kind):
        assert classify_unparseable_response(text) == kind


class TestNormalizeSteps:
    def test_renumbers_contiguously(self):
        steps = normalize_steps([
            {"stepNumber": 5, "queryType": "find_meetings"},
            {"stepNumber": 9, "queryType": "get_participants"},
        ])

        assert [s.step_number for s in steps] == [1, 2]

    def test_start_at_offsets_numbering(self):
        steps = normalize_steps([{"queryType": "find_documents"}], start_at=4)

        assert steps[0].step_number == 4

    def test_unknown_query_type_becomes_general_query(self):
        steps = normalize_steps([{"queryType": "summon_meetings"}, {}])

        assert all(s.query_type == QueryType.GENERAL_QUERY for s in steps)

    def test_drops_invalid_dependencies(self):
        steps = normalize_steps([
            {"queryType": "find_meetings", "dependencies": [1, 2]},
            {"queryType": "get_participants", "dependencies": [1, "1", 2, 3, 0, None, True]},
        ])

        assert steps[0].dependencies == []
        assert steps[1].dependencies == [1]

    def test_defaults_for_malformed_fields(self):
        steps = normalize_steps(["not a step", {"queryType": "find_meetings", "parameters": "x", "estimatedTime": "eons"}])

        assert len(steps) == 1
        assert steps[0].parameters == {}
        assert steps[0].estimated_time == EstimatedTime.MEDIUM


class TestComplexityAndOptimizations:
    def test_complexity_levels(self, step_factory):
        assert estimate_complexity([step_factory(1)]) == Complexity.LOW
        assert estimate_complexity([step_factory(i) for i in range(1, 4)]) == Complexity.MEDIUM
        assert estimate_complexity([step_factory(1, estimated_time="slow")]) == Complexity.MEDIUM
        assert estimate_complexity([
            step_factory(1), step_factory(2), step_factory(3, QueryType.ANALYZE_TOPIC_TRENDS),
        ]) == Complexity.HIGH
        assert estimate_complexity([step_factory(i) for i in range(1, 6)]) == Complexity.HIGH

    def test_stated_complexity_is_overridden(self, planner):
        strategy = planner.build_strategy(llm_strategy(complexity="high"))

        assert strategy.complexity == Complexity.LOW

    def test_optimizations(self, step_factory):
        steps = [
            step_factory(1, parameters={}),
            step_factory(2, QueryType.FIND_DOCUMENTS, parameters={}, estimated_time="slow"),
        ]

        suggestions = [o["suggestion"] for o in generate_optimizations(steps)]

        assert "Consider adding timeframe filters to improve query performance" in suggestions
        assert "Steps 1, 2 can be executed in parallel" in suggestions
        assert any("slow queries" in s for s in suggestions)


class TestFallbackStrategy:
    @pytest.mark.parametrize(
        "query,expected_type",
        [
            ("What's on my schedule?", QueryType.FIND_MEETINGS),
            ("Who did I talk to?", QueryType.GET_PARTICIPANTS),
            ("List the participants", QueryType.GET_PARTICIPANTS),
            ("Find the budget file", QueryType.FIND_DOCUMENTS),
            ("How do we collaborate?", QueryType.ANALYZE_COLLABORATION),
            ("Tell me something", QueryType.FIND_MEETINGS),
        ],
    )
    def test_keyword_routing(self, planner, query, expected_type):
        strategy = planner.create_fallback_strategy(query, {})

        assert strategy.steps[0].query_type == expected_type
        assert strategy.steps[0].estimated_time == EstimatedTime.FAST

    def test_whole_word_match_for_who(self, planner):
        strategy = planner.create_fallback_strategy("the whole thing", {})

        assert strategy.steps[0].query_type == QueryType.FIND_MEETINGS

    def test_only_find_meetings_gets_parameters(self, planner, user_context):
        strategy = planner.create_fallback_strategy("Show my documents", user_context)

        assert strategy.steps[0].parameters == {}

    @pytest.mark.parametrize(
        "query,timeframe",
        [
            ("meetings last month", "last_month"),
            ("meetings in march", "march"),
            ("meetings this month", "this_month"),
            ("meetings this week", "this_week"),
            ("meetings today", "today"),
            ("meetings tomorrow", "tomorrow"),
            ("meetings I may have", "recent"),
        ],
    )
    def test_timeframe_guess(self, planner, query, timeframe):
        strategy = planner.create_fallback_strategy(query, {})

        assert strategy.steps[0].parameters["timeframe"] == timeframe
