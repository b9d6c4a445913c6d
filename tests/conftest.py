"""
Pytest configuration and fixtures for MeetPrep tests.

Provides shared fixtures for:
- Test environment and settings isolation
- Mock LLM service and graph database
- Common strategy and step-result builders
"""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.schemas.strategy import QueryType, Step, StepResult, Strategy
from libs.common.settings import get_settings


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables and reset cached singletons."""
    monkeypatch.setenv("MEETPREP_APP_ENV", "test")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.delenv("LANGCHAIN_TRACING_V2", raising=False)
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()
    import api.execution.context_manager as context_manager
    import api.observability.tracing as tracing

    context_manager._context_store = None
    tracing._pipeline_monitor = None


@pytest.fixture
def mock_llm():
    """LLM service whose ``generate_response`` is an AsyncMock."""
    llm = MagicMock()
    llm.generate_response = AsyncMock()
    return llm


@pytest.fixture
def mock_graph():
    """Graph database service with async methods mocked."""
    graph = MagicMock()
    graph.initialize = AsyncMock()
    graph.close = AsyncMock()
    graph.run_read = AsyncMock(return_value=[])
    graph.run_write = AsyncMock(return_value=[])
    graph.create_person = AsyncMock(return_value={"email": "alice@example.com"})
    graph.create_meeting = AsyncMock(side_effect=lambda event: {"id": f"m-{event['googleEventId']}"})
    graph.create_document = AsyncMock(return_value={})
    graph.link_meeting_to_document = AsyncMock()
    graph.create_organization = AsyncMock(side_effect=lambda org: {**org})
    graph.create_department = AsyncMock(side_effect=lambda dept: {"code": dept["code"], "name": dept["name"]})
    graph.assign_person_to_department = AsyncMock(return_value=None)
    graph.create_reporting_relationship = AsyncMock(return_value=None)
    return graph


@pytest.fixture
def user_context() -> Dict[str, Any]:
    return {
        "user": {"id": "u-1", "email": "alice@example.com", "name": "Alice"},
        "conversation_history": [],
    }


def make_step(
    step_number: int,
    query_type: QueryType = QueryType.FIND_MEETINGS,
    dependencies: Optional[List[int]] = None,
    parameters: Optional[Dict[str, Any]] = None,
    estimated_time: str = "fast",
) -> Step:
    return Step(
        step_number=step_number,
        description=f"Step {step_number}",
        query_type=query_type,
        parameters=parameters if parameters is not None else {"timeframe": "this_week"},
        dependencies=dependencies or [],
        estimated_time=estimated_time,
    )


def make_strategy(steps: List[Step], complexity: str = "low") -> Strategy:
    return Strategy(
        analysis="Look up meetings",
        complexity=complexity,
        steps=steps,
        expected_outcome="A list of meetings",
    )


def make_result(
    step_number: int,
    rows: List[Any],
    query_type: QueryType = QueryType.FIND_MEETINGS,
    success: bool = True,
    parameters: Optional[Dict[str, Any]] = None,
) -> StepResult:
    return StepResult(
        step_number=step_number,
        query_type=query_type,
        description=f"Step {step_number}",
        success=success,
        results={"results": rows},
        parameters=parameters or {},
        error=None if success else "boom",
    )


@pytest.fixture
def meeting_rows() -> List[Dict[str, Any]]:
    return [
        {
            "id": "m-1",
            "title": "Q3 budget review",
            "description": "Quarterly planning",
            "startTime": "2024-07-01T10:00:00+00:00",
            "organizer": {"email": "bob@example.com", "name": "Bob"},
            "attendees": [
                {"email": "alice@example.com", "name": "Alice"},
                {"email": "carol@example.com", "name": "Carol"},
            ],
        },
        {
            "id": "m-2",
            "title": "Hiring sync",
            "startTime": "2024-07-02T15:00:00+00:00",
            "organizer": {"email": "alice@example.com", "name": "Alice"},
            "attendees": [{"email": "dave@example.com", "name": "Dave"}],
        },
    ]


@pytest.fixture
def step_factory():
    return make_step


@pytest.fixture
def strategy_factory():
    return make_strategy


@pytest.fixture
def result_factory():
    return make_result
