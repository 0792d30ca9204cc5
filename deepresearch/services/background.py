"""Ways to run the research routine after the triggering request returns."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

import httpx

from deepresearch.config import Settings
from deepresearch.services import logger as log_service

ResearchRunner = Callable[[str, Optional[str]], Awaitable[object]]

PROCESS_RESEARCH_PATH = "/api/process-research"
INTERNAL_TOKEN_HEADER = "x-internal-token"


class BackgroundStrategy(Protocol):
    async def dispatch(self, session_id: str, prompt: str) -> None: ...
    async def aclose(self) -> None: ...


class InProcessStrategy:
    """Run research as an asyncio task inside this process.

    Keeps one handle per session id so duplicate dispatches are ignored while
    a task is alive, and so shutdown can cancel what is still running.
    """

    def __init__(self, runner: ResearchRunner):
        self.runner = runner
        self._tasks: dict[str, asyncio.Task] = {}

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def dispatch(self, session_id: str, prompt: str) -> None:
        if self.is_running(session_id):
            log_service.log_event(
                event_type="dispatch_deduplicated",
                message="Research task already running for session",
                session_id=session_id,
            )
            return

        task = asyncio.create_task(self.runner(session_id, prompt), name=f"research:{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda t: self._on_done(session_id, t))

    def _on_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
        if task.cancelled():
            log_service.log_event(
                event_type="research_task_cancelled",
                message="Research task cancelled",
                session_id=session_id,
            )
            return
        exc = task.exception()
        if exc is not None:
            log_service.logger.opt(exception=exc).error(
                f"Research task for session {session_id} crashed: {exc}"
            )

    async def wait(self, session_id: str) -> None:
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class ResumeEndpointStrategy:
    """Hand research to the internal resume endpoint and do not wait for it.

    The request is posted with a short read timeout: once the server has the
    request the research continues there, so a read timeout counts as handed
    off. Any other failure is logged and leaves the session in `processing`.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        dispatch_timeout: float = 1.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.dispatch_timeout = dispatch_timeout
        self.transport = transport

    async def dispatch(self, session_id: str, prompt: str) -> None:
        headers = {INTERNAL_TOKEN_HEADER: self.token} if self.token else {}
        timeout = httpx.Timeout(10.0, read=self.dispatch_timeout)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}{PROCESS_RESEARCH_PATH}",
                    json={"sessionId": session_id, "prompt": prompt},
                    headers=headers,
                )
        except httpx.ReadTimeout:
            log_service.log_event(
                event_type="research_handed_off",
                message="Resume endpoint accepted research",
                session_id=session_id,
            )
            return
        except httpx.HTTPError as e:
            log_service.logger.error(
                f"Failed to dispatch research for session {session_id}: {e}"
            )
            return

        if response.is_success:
            log_service.log_event(
                event_type="research_handed_off",
                message="Resume endpoint completed research",
                session_id=session_id,
                status_code=response.status_code,
            )
        else:
            log_service.logger.error(
                f"Resume endpoint rejected session {session_id}: "
                f"{response.status_code} {response.text[:300]}"
            )

    async def aclose(self) -> None:
        return None


def build_background_strategy(config: Settings, runner: ResearchRunner) -> BackgroundStrategy:
    strategy = config.background_strategy.lower().strip()
    if strategy == "in_process":
        return InProcessStrategy(runner)
    if strategy == "resume_endpoint":
        return ResumeEndpointStrategy(
            config.internal_base_url,
            config.internal_api_token,
            config.resume_dispatch_timeout_seconds,
        )
    raise ValueError(f"Unsupported BACKGROUND_STRATEGY: {config.background_strategy}")
