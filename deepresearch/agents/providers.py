from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from deepresearch.config import Settings
from deepresearch.errors import ProviderError
from deepresearch.llm_client import get_gemini_client, get_openai_client
from deepresearch.services import logger as log_service
from deepresearch.services.prompt_store import render_prompt

DEEP_RESEARCH_PLACEHOLDER = "No response from Gemini deep research agent"


class ResearchProvider:
    """One LLM backend answering a research prompt with plain text.

    Subclasses implement `_generate`; `research` adds timing, logging and
    wraps every failure in a ProviderError tagged with the provider name.
    No retries happen here.
    """

    name: str = "provider"
    model: str = ""

    async def _generate(self, prompt: str) -> str:
        raise NotImplementedError

    async def research(self, prompt: str) -> str:
        t0 = time.monotonic()
        try:
            text = await self._generate(prompt)
        except ProviderError as e:
            self._log(t0, error=e.message)
            raise
        except Exception as e:
            self._log(t0, error=str(e) or type(e).__name__)
            raise ProviderError(self.name, str(e) or type(e).__name__) from e
        self._log(t0, output_chars=len(text))
        return text

    def _log(self, t0: float, *, error: Optional[str] = None, output_chars: int = 0) -> None:
        log_service.log_llm_call(
            model=self.model,
            caller=f"{self.name}_research",
            duration_ms=int((time.monotonic() - t0) * 1000),
            status="error" if error else "success",
            error=error,
            output_chars=output_chars,
        )


class OpenAIResearchProvider(ResearchProvider):
    name = "openai"

    def __init__(
        self,
        client: Any,
        model: str = "gpt-4o",
        *,
        temperature: float = 0.7,
        max_tokens: int = 3000,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def _generate(self, prompt: str) -> str:
        completion = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": render_prompt("research.system_prompt")},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        return completion.choices[0].message.content or ""


class GeminiResearchProvider(ResearchProvider):
    name = "gemini"

    def __init__(self, client: Any, model: str = "gemini-flash-latest"):
        self.client = client
        self.model = model

    async def _generate(self, prompt: str) -> str:
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config={"system_instruction": render_prompt("research.system_prompt")},
        )
        return response.text or ""


class PollState(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


ACTIVE_STATUSES = frozenset({"in_progress", "requires_action"})
FAILED_STATUSES = frozenset({"failed", "cancelled"})


@dataclass
class PollOutcome:
    interaction_id: str
    state: PollState
    attempts: int = 0
    last_status: Optional[str] = None
    text: str = ""


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_output_text(interaction: Any) -> str:
    """Text of the last text-bearing output of an interaction."""
    if interaction is None:
        return ""
    outputs = _field(interaction, "outputs") or []
    for output in reversed(list(outputs)):
        text = _field(output, "text")
        if isinstance(text, str) and text:
            return text
    return ""


class GeminiDeepResearchProvider(ResearchProvider):
    """Gemini background research agent: submit, then poll until terminal.

    The poll loop is bounded by `max_polls` and by a wall-clock ceiling of
    `max_wait_seconds`; whichever runs out first ends it as timed out, and the
    best text seen so far (or a placeholder) is returned. Polling can resume
    from an existing interaction id via `resume`.
    """

    name = "gemini"

    def __init__(
        self,
        client: Any,
        agent: str = "deep-research-pro-preview-12-2025",
        *,
        poll_interval: float = 5.0,
        max_polls: int = 120,
        max_wait_seconds: float = 660.0,
    ):
        self.client = client
        self.agent = agent
        self.model = agent
        self.poll_interval = max(poll_interval, 0.0)
        self.max_polls = max(int(max_polls), 1)
        self.max_wait_seconds = max_wait_seconds

    async def submit(self, prompt: str) -> str:
        interaction = await asyncio.to_thread(
            self.client.interactions.create,
            input=prompt,
            agent=self.agent,
            background=True,
        )
        interaction_id = _field(interaction, "id")
        if not interaction_id:
            raise ProviderError(self.name, "deep research interaction returned no id")
        log_service.log_event(
            event_type="deep_research_submitted",
            message="Gemini deep research interaction created",
            interaction_id=interaction_id,
            state=PollState.SUBMITTED.value,
        )
        return interaction_id

    async def poll(self, interaction_id: str) -> PollOutcome:
        outcome = PollOutcome(interaction_id=interaction_id, state=PollState.POLLING)
        last: Any = None
        try:
            async with asyncio.timeout(self.max_wait_seconds):
                while outcome.attempts < self.max_polls:
                    last = await asyncio.to_thread(self.client.interactions.get, interaction_id)
                    outcome.attempts += 1
                    outcome.last_status = _field(last, "status") or "unknown"

                    if outcome.last_status in FAILED_STATUSES:
                        outcome.state = PollState.FAILED
                        return outcome
                    if outcome.last_status in ACTIVE_STATUSES:
                        await asyncio.sleep(self.poll_interval)
                        continue

                    outcome.state = PollState.COMPLETED
                    outcome.text = extract_output_text(last)
                    return outcome
        except TimeoutError:
            pass

        outcome.state = PollState.TIMED_OUT
        outcome.text = extract_output_text(last)
        log_service.log_event(
            event_type="deep_research_timed_out",
            message="Gemini deep research polling exhausted its budget",
            interaction_id=interaction_id,
            attempts=outcome.attempts,
            last_status=outcome.last_status,
        )
        return outcome

    async def resume(self, interaction_id: str) -> str:
        outcome = await self.poll(interaction_id)
        if outcome.state == PollState.FAILED:
            raise ProviderError(
                self.name,
                f"deep research interaction {interaction_id} ended with status {outcome.last_status}",
            )
        return outcome.text or DEEP_RESEARCH_PLACEHOLDER

    async def _generate(self, prompt: str) -> str:
        interaction_id = await self.submit(prompt)
        return await self.resume(interaction_id)


def build_providers(config: Settings) -> tuple[ResearchProvider, ResearchProvider]:
    """Construct the (openai, gemini) provider pair from settings."""
    openai_provider = OpenAIResearchProvider(
        get_openai_client(config),
        config.openai_research_model,
        temperature=config.openai_research_temperature,
        max_tokens=config.openai_research_max_tokens,
    )

    mode = config.gemini_mode.lower().strip()
    gemini_client = get_gemini_client(config)
    if mode == "generate":
        gemini_provider: ResearchProvider = GeminiResearchProvider(gemini_client, config.gemini_model)
    elif mode == "deep_research":
        gemini_provider = GeminiDeepResearchProvider(
            gemini_client,
            config.gemini_deep_research_agent,
            poll_interval=config.gemini_poll_interval_seconds,
            max_polls=config.gemini_max_polls,
            max_wait_seconds=config.gemini_max_wait_seconds,
        )
    else:
        raise ValueError(f"Unsupported GEMINI_MODE: {config.gemini_mode}")
    return openai_provider, gemini_provider
