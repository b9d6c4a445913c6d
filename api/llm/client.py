"""
LLM completion client for the meeting intelligence pipeline.

Wraps ``ChatOpenAI`` behind a small ``generate_response(prompt, options,
context)`` contract: the caller passes a user prompt, optional model options
and a context mapping whose ``system_prompt`` entry overrides the default
system prompt. The raw completion text is returned.
"""

import asyncio
import re
from typing import Any, Dict, List, Optional

import openai
import structlog
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from api.observability.tracing import LLMCallLogger
from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = """You are an intelligent assistant for a meeting intelligence platform.
You help users query information about meetings, participants, documents and organizational relationships."""

TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def strip_code_fence(text: str) -> str:
    """Return the body of the first fenced code block, or the stripped text."""
    if not isinstance(text, str):
        return ""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


class LLMService:
    """Async chat-completion client with retries and a hard timeout."""

    def __init__(
        self,
        llm: Optional[ChatOpenAI] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        settings = get_settings()
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.llm_max_retries
        self.llm = llm or ChatOpenAI(
            model=settings.openai_model,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_tokens,
            callbacks=[LLMCallLogger()],
        )

    def _build_messages(self, prompt: str, context: Dict[str, Any]) -> List[BaseMessage]:
        system_prompt = context.get("system_prompt") or DEFAULT_SYSTEM_PROMPT
        return [SystemMessage(content=system_prompt), HumanMessage(content=prompt)]

    async def _invoke(self, messages: List[BaseMessage], options: Dict[str, Any]) -> str:
        llm = self.llm.bind(**options) if options else self.llm

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=1, min=1, max=5),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        ):
            with attempt:
                response = await llm.ainvoke(messages)

        content = response.content
        if isinstance(content, list):
            # Content blocks from multimodal-capable models
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content
            )
        return content or ""

    async def generate_response(
        self,
        prompt: str,
        options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Generate a completion for ``prompt``.

        Args:
            prompt: User prompt text
            options: Model options bound for this call (e.g. ``temperature``)
            context: Call context; ``system_prompt`` overrides the default

        Returns:
            Raw completion text

        Raises:
            asyncio.TimeoutError: If the call exceeds the configured timeout
            openai.OpenAIError: If the provider keeps failing after retries
        """
        context = context or {}
        messages = self._build_messages(prompt, context)

        try:
            return await asyncio.wait_for(self._invoke(messages, options or {}), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("LLM call timed out", timeout_seconds=self.timeout_seconds)
            raise


_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    """Get or create the global LLM service instance."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
