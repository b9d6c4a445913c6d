"""Tests for the LLM completion client."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from api.llm import LLMService, strip_code_fence
from api.llm.client import DEFAULT_SYSTEM_PROMPT


class TestStripCodeFence:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ('```json\n{"a": 1}\n```', '{"a": 1}'),
            ('Here you go:\n```\n{"a": 1}\n```\nthanks', '{"a": 1}'),
            ('  {"a": 1}  ', '{"a": 1}'),
            (None, ""),
        ],
    )
    def test_strip(self, text, expected):
        assert strip_code_fence(text) == expected


class TestGenerateResponse:
    @pytest.mark.asyncio
    async def test_returns_completion_text(self):
        service = LLMService(llm=FakeListChatModel(responses=['{"steps": []}']))

        assert await service.generate_response("plan this", {}, {}) == '{"steps": []}'

    @pytest.mark.asyncio
    async def test_system_prompt_from_context(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=AIMessage(content="ok"))
        service = LLMService(llm=llm)

        await service.generate_response("question", None, {"system_prompt": "Be terse."})
        await service.generate_response("question")

        first, second = [call.args[0] for call in llm.ainvoke.call_args_list]
        assert first == [SystemMessage(content="Be terse."), HumanMessage(content="question")]
        assert second[0].content == DEFAULT_SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_joins_content_blocks(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(return_value=AIMessage(content=[{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]))

        assert await LLMService(llm=llm).generate_response("q") == "ab"

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        llm = MagicMock()
        connection_error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
        llm.ainvoke = AsyncMock(side_effect=[connection_error, AIMessage(content="recovered")])
        service = LLMService(llm=llm, max_retries=1)

        assert await service.generate_response("q") == "recovered"
        assert llm.ainvoke.call_count == 2

    @pytest.mark.asyncio
    async def test_does_not_retry_other_errors(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=ValueError("bad request"))

        with pytest.raises(ValueError):
            await LLMService(llm=llm, max_retries=2).generate_response("q")
        assert llm.ainvoke.call_count == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(5)

        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=hang)

        with pytest.raises(asyncio.TimeoutError):
            await LLMService(llm=llm, timeout_seconds=0.01).generate_response("q")
