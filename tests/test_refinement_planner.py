"""Tests for refinement question planning and prompt composition."""
import pytest
from unittest.mock import AsyncMock, MagicMock

from deepresearch.agents.refinement_planner import (
    NO_REFINEMENT_SENTINEL,
    RefinementPlanner,
    compose_refined_prompt,
    parse_refinement_questions,
)
from deepresearch.models.session import RefinementQuestion


def _completion(text):
    completion = MagicMock()
    completion.choices = [MagicMock(message=MagicMock(content=text))]
    return completion


def test_parse_numbered_questions_assigns_sequential_ids():
    text = (
        "Here are some questions:\n"
        "1. What time period should the research cover?\n"
        "  2) Which region matters most?\n"
        "Thanks!"
    )
    questions = parse_refinement_questions(text)
    assert [q.id for q in questions] == ["q1", "q2"]
    assert questions[0].question == "What time period should the research cover?"
    assert questions[1].question == "Which region matters most?"
    assert all(q.answer is None for q in questions)


def test_parse_sentinel_means_no_questions():
    assert parse_refinement_questions(f"{NO_REFINEMENT_SENTINEL}") == []
    assert parse_refinement_questions(f"1. Something?\n{NO_REFINEMENT_SENTINEL}") == []


def test_parse_ignores_unnumbered_lines():
    assert parse_refinement_questions("- bullet\n* another\nplain text") == []
    assert parse_refinement_questions("") == []


def test_compose_without_questions_returns_prompt_unchanged():
    assert compose_refined_prompt("Quantum computing", []) == "Quantum computing"


def test_compose_appends_pairs_in_question_order():
    questions = [
        RefinementQuestion(id="q1", question="Time period?", answer="Last 2 years"),
        RefinementQuestion(id="q2", question="Focus?", answer="Hardware"),
    ]
    assert compose_refined_prompt("Prompt", questions) == (
        "Prompt\n\nAdditional context:\n"
        "Q: Time period?\nA: Last 2 years\n\nQ: Focus?\nA: Hardware"
    )


def test_compose_emits_one_pair_per_question():
    questions = [RefinementQuestion(id=f"q{i}", question=f"Q{i}?", answer=f"A{i}") for i in range(5)]
    composed = compose_refined_prompt("Prompt", questions)
    assert composed.count("\nQ: ") == 5
    assert composed.count("\nA: ") == 5


class TestRefinementPlanner:
    @pytest.mark.asyncio
    async def test_returns_parsed_questions(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(
            return_value=_completion("1. Which industry?\n2. Which timeframe?")
        )
        planner = RefinementPlanner(client, "gpt-4o")

        questions = await planner.plan_refinement("AI adoption")

        assert [q.question for q in questions] == ["Which industry?", "Which timeframe?"]
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert NO_REFINEMENT_SENTINEL in kwargs["messages"][0]["content"]
        assert "AI adoption" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_clear_prompt_yields_no_questions(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_completion(NO_REFINEMENT_SENTINEL))
        planner = RefinementPlanner(client, "gpt-4o")

        assert await planner.plan_refinement("Very specific prompt") == []

    @pytest.mark.asyncio
    async def test_provider_error_fails_open(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("rate limited"))
        planner = RefinementPlanner(client, "gpt-4o")

        assert await planner.plan_refinement("Anything") == []

    @pytest.mark.asyncio
    async def test_empty_content_yields_no_questions(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(return_value=_completion(None))
        planner = RefinementPlanner(client, "gpt-4o")

        assert await planner.plan_refinement("Anything") == []
