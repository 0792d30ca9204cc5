"""Shared fakes for orchestrator, background and API tests."""
from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.errors import DeliveryError, ProviderError
from deepresearch.models.session import RefinementQuestion, ResearchSession
from deepresearch.services.session_store import InMemorySessionStore

QUANTUM_PROMPT = "What are the latest developments in quantum computing?"


class FakePlanner:
    def __init__(self, questions: Optional[list[str]] = None):
        self.questions = questions or []
        self.prompts: list[str] = []

    async def plan_refinement(self, prompt: str) -> list[RefinementQuestion]:
        self.prompts.append(prompt)
        return [
            RefinementQuestion(id=f"q{i}", question=text)
            for i, text in enumerate(self.questions, 1)
        ]


class FakeProvider:
    def __init__(self, name: str, result: str = "", error: Optional[str] = None, delay: float = 0):
        self.name = name
        self.result = result or f"{name} findings"
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []

    async def research(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise ProviderError(self.name, self.error)
        return self.result


class FakeDelivery:
    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.delivered: list[ResearchSession] = []

    async def deliver(self, session: ResearchSession) -> None:
        self.delivered.append(session)
        if self.error:
            raise DeliveryError(self.error)


class RecordingBackground:
    def __init__(self):
        self.dispatched: list[tuple[str, str]] = []

    async def dispatch(self, session_id: str, prompt: str) -> None:
        self.dispatched.append((session_id, prompt))

    async def aclose(self) -> None:
        return None


@pytest.fixture
def store():
    return InMemorySessionStore()


@pytest.fixture
def make_orchestrator(store):
    def factory(
        questions: Optional[list[str]] = None,
        openai: Optional[FakeProvider] = None,
        gemini: Optional[FakeProvider] = None,
        delivery: Optional[FakeDelivery] = None,
        research_timeout_seconds: Optional[float] = None,
        session_store=None,
    ) -> ResearchOrchestrator:
        return ResearchOrchestrator(
            session_store or store,
            FakePlanner(questions),
            openai or FakeProvider("openai"),
            gemini or FakeProvider("gemini"),
            delivery or FakeDelivery(),
            background=RecordingBackground(),
            research_timeout_seconds=research_timeout_seconds,
        )

    return factory
