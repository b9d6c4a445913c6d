"""Exception taxonomy for the meeting intelligence pipeline.

Only ``StrategyValidationError`` and ``PlanningError`` are expected to reach
API callers. The remaining exceptions are raised and absorbed inside the
pipeline and surface as result metadata (``errors``, ``gaps``).
"""

from __future__ import annotations

from typing import List, Optional


class IntelligenceError(Exception):
    """Base class for pipeline errors."""


class PlanningError(IntelligenceError):
    """No strategy could be produced by either the LLM or the fallback."""


class PlanningContractViolation(IntelligenceError):
    """The planning LLM ignored the JSON-only contract."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class StrategyValidationError(IntelligenceError):
    """A strategy has structural defects and must not be executed."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        super().__init__("; ".join(errors) or "Strategy validation failed")
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class StepExecutionError(IntelligenceError):
    """A single step's graph query failed or timed out."""

    def __init__(self, step_number: int, message: str):
        super().__init__(f"Step {step_number} failed: {message}")
        self.step_number = step_number


class AnalysisParseError(IntelligenceError):
    """The analysis or follow-up LLM response could not be parsed."""
