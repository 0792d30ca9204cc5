"""Tests for the research provider adapters."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from deepresearch.agents.providers import (
    DEEP_RESEARCH_PLACEHOLDER,
    GeminiDeepResearchProvider,
    GeminiResearchProvider,
    OpenAIResearchProvider,
    PollState,
    build_providers,
    extract_output_text,
)
from deepresearch.config import Settings
from deepresearch.errors import ProviderError


def _interaction(status, text=None, interaction_id="int-1"):
    outputs = [SimpleNamespace(text=text)] if text is not None else []
    return SimpleNamespace(id=interaction_id, status=status, outputs=outputs)


def _deep_client(*statuses):
    client = MagicMock()
    client.interactions.create.return_value = SimpleNamespace(id="int-1")
    client.interactions.get.side_effect = list(statuses)
    return client


class TestOpenAIResearchProvider:
    @pytest.mark.asyncio
    async def test_returns_completion_text(self):
        client = MagicMock()
        completion = MagicMock()
        completion.choices = [MagicMock(message=MagicMock(content="Findings"))]
        client.chat.completions.create = AsyncMock(return_value=completion)
        provider = OpenAIResearchProvider(client, "gpt-4o", temperature=0.2, max_tokens=100)

        assert await provider.research("Prompt") == "Findings"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 100
        assert kwargs["messages"][-1] == {"role": "user", "content": "Prompt"}

    @pytest.mark.asyncio
    async def test_failure_is_wrapped_with_provider_name(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("invalid api key"))
        provider = OpenAIResearchProvider(client)

        with pytest.raises(ProviderError) as exc_info:
            await provider.research("Prompt")

        assert exc_info.value.provider == "openai"
        assert exc_info.value.message == "invalid api key"
        assert str(exc_info.value) == "openai research failed: invalid api key"


class TestGeminiResearchProvider:
    @pytest.mark.asyncio
    async def test_returns_response_text(self):
        client = MagicMock()
        client.aio.models.generate_content = AsyncMock(return_value=SimpleNamespace(text="Gemini says"))
        provider = GeminiResearchProvider(client, "gemini-flash-latest")

        assert await provider.research("Prompt") == "Gemini says"
        kwargs = client.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-flash-latest"
        assert kwargs["contents"] == "Prompt"
        assert "system_instruction" in kwargs["config"]

    @pytest.mark.asyncio
    async def test_failure_is_wrapped(self):
        client = MagicMock()
        client.aio.models.generate_content = AsyncMock(side_effect=ValueError("blocked"))
        provider = GeminiResearchProvider(client)

        with pytest.raises(ProviderError, match="gemini research failed: blocked"):
            await provider.research("Prompt")


class TestGeminiDeepResearchProvider:
    @pytest.mark.asyncio
    async def test_polls_until_completed(self):
        client = _deep_client(
            _interaction("in_progress"),
            _interaction("requires_action"),
            _interaction("completed", "Deep findings"),
        )
        provider = GeminiDeepResearchProvider(client, "agent-x", poll_interval=0, max_polls=5)

        assert await provider.research("Prompt") == "Deep findings"
        client.interactions.create.assert_called_once_with(
            input="Prompt", agent="agent-x", background=True
        )
        assert client.interactions.get.call_count == 3

    @pytest.mark.asyncio
    async def test_failed_and_cancelled_statuses_raise(self):
        for status in ("failed", "cancelled"):
            client = _deep_client(_interaction(status))
            provider = GeminiDeepResearchProvider(client, poll_interval=0)

            with pytest.raises(ProviderError, match=status):
                await provider.research("Prompt")

    @pytest.mark.asyncio
    async def test_max_polls_ends_in_timeout_with_placeholder(self):
        client = _deep_client(*[_interaction("in_progress") for _ in range(3)])
        provider = GeminiDeepResearchProvider(client, poll_interval=0, max_polls=3)

        outcome = await provider.poll("int-1")

        assert outcome.state == PollState.TIMED_OUT
        assert outcome.attempts == 3
        assert outcome.last_status == "in_progress"
        client.interactions.get.side_effect = [_interaction("in_progress") for _ in range(3)]
        assert await provider.resume("int-1") == DEEP_RESEARCH_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_timeout_returns_partial_text_when_available(self):
        client = _deep_client(
            _interaction("in_progress", "Draft so far"),
            _interaction("in_progress", "Longer draft so far"),
        )
        provider = GeminiDeepResearchProvider(client, poll_interval=0, max_polls=2)

        assert await provider.research("Prompt") == "Longer draft so far"

    @pytest.mark.asyncio
    async def test_wall_clock_ceiling_stops_polling(self):
        client = MagicMock()
        client.interactions.get.return_value = _interaction("in_progress")
        provider = GeminiDeepResearchProvider(
            client, poll_interval=0.01, max_polls=10_000, max_wait_seconds=0.05
        )

        outcome = await provider.poll("int-1")

        assert outcome.state == PollState.TIMED_OUT
        assert 0 < outcome.attempts < 10_000

    @pytest.mark.asyncio
    async def test_resume_from_existing_interaction(self):
        client = _deep_client(_interaction("completed", "Resumed findings"))
        provider = GeminiDeepResearchProvider(client, poll_interval=0)

        assert await provider.resume("int-1") == "Resumed findings"
        client.interactions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_submit_without_id_raises(self):
        client = MagicMock()
        client.interactions.create.return_value = SimpleNamespace(id=None)
        provider = GeminiDeepResearchProvider(client, poll_interval=0)

        with pytest.raises(ProviderError, match="no id"):
            await provider.research("Prompt")


def test_extract_output_text_prefers_last_text_output():
    interaction = {
        "outputs": [
            {"text": "first"},
            {"type": "thought"},
            {"text": "final answer"},
            {"text": ""},
        ]
    }
    assert extract_output_text(interaction) == "final answer"
    assert extract_output_text(None) == ""
    assert extract_output_text({"outputs": []}) == ""


def test_build_providers_selects_gemini_mode():
    config = Settings(openai_api_key="sk-test", gemini_api_key="g-test", gemini_mode="deep_research")
    openai_provider, gemini_provider = build_providers(config)
    assert isinstance(openai_provider, OpenAIResearchProvider)
    assert isinstance(gemini_provider, GeminiDeepResearchProvider)

    _, gemini_provider = build_providers(config.model_copy(update={"gemini_mode": "generate"}))
    assert isinstance(gemini_provider, GeminiResearchProvider)

    with pytest.raises(ValueError):
        build_providers(config.model_copy(update={"gemini_mode": "turbo"}))
