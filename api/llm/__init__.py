"""LLM completion client used by the planning, analysis and synthesis stages."""

from .client import LLMService, get_llm_service, strip_code_fence

__all__ = ["LLMService", "get_llm_service", "strip_code_fence"]
