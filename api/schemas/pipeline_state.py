"""Pipeline state for the iterative query graph.

The state flows through every node of the LangGraph pipeline. Nodes return
partial updates as dicts; LangGraph merges them into the next state.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from api.schemas.strategy import AnalysisResult, Step, StepResult, Strategy, ValidationResult


class PipelineState(BaseModel):
    """Lifecycle of one natural-language question."""

    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Execution identifier")
    started_at: float = Field(default_factory=time.time, description="Wall clock start (epoch seconds)")

    # Input
    user_query: str = Field(description="Original user question")
    context: Dict[str, Any] = Field(default_factory=dict, description="User and conversation context")

    # Planning
    strategy: Optional[Strategy] = Field(default=None, description="Current (optimized) strategy")
    validation: Optional[ValidationResult] = Field(default=None, description="Validation of the initial strategy")

    # Execution
    pending_steps: List[Step] = Field(default_factory=list, description="Steps queued for the next execution round")
    step_results: List[StepResult] = Field(default_factory=list, description="Results in completion order")
    iterations: int = Field(default=0, description="Execution rounds performed")

    # Analysis and output
    analysis: Optional[AnalysisResult] = Field(default=None, description="Latest analysis")
    gaps: List[str] = Field(default_factory=list, description="Gaps reported across analyses")
    errors: List[str] = Field(default_factory=list, description="Non-fatal step errors")
    final_answer: Optional[str] = Field(default=None, description="Synthesized answer")

    node_timings: Dict[str, float] = Field(default_factory=dict, description="Per-node execution times (ms)")

    def add_timing(self, node_name: str, duration_ms: float) -> Dict[str, float]:
        """Return node timings including ``node_name``, for use in a node update."""
        return {**self.node_timings, node_name: duration_ms}

    @property
    def failed_steps(self) -> List[int]:
        return [r.step_number for r in self.step_results if not r.success]


def create_initial_state(user_query: str, context: Optional[Dict[str, Any]] = None) -> PipelineState:
    """Create the initial state for a new query."""
    return PipelineState(user_query=user_query, context=dict(context or {}))
