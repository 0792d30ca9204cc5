"""Tests for background research dispatch."""
import asyncio
import json

import httpx
import pytest

from deepresearch.config import Settings
from deepresearch.services.background import (
    InProcessStrategy,
    ResumeEndpointStrategy,
    build_background_strategy,
)


class TestInProcessStrategy:
    @pytest.mark.asyncio
    async def test_dispatch_runs_routine_with_session_and_prompt(self):
        calls = []

        async def runner(session_id, prompt):
            calls.append((session_id, prompt))

        strategy = InProcessStrategy(runner)
        await strategy.dispatch("s1", "Prompt")
        await strategy.wait("s1")

        assert calls == [("s1", "Prompt")]
        assert not strategy.is_running("s1")

    @pytest.mark.asyncio
    async def test_duplicate_dispatch_while_running_is_ignored(self):
        release = asyncio.Event()
        calls = []

        async def runner(session_id, prompt):
            calls.append(session_id)
            await release.wait()

        strategy = InProcessStrategy(runner)
        await strategy.dispatch("s1", "Prompt")
        await strategy.dispatch("s1", "Prompt")
        await asyncio.sleep(0)
        assert strategy.is_running("s1")

        release.set()
        await strategy.wait("s1")
        assert calls == ["s1"]

    @pytest.mark.asyncio
    async def test_redispatch_after_completion_runs_again(self):
        calls = []

        async def runner(session_id, prompt):
            calls.append(session_id)

        strategy = InProcessStrategy(runner)
        await strategy.dispatch("s1", "Prompt")
        await strategy.wait("s1")
        await strategy.dispatch("s1", "Prompt")
        await strategy.wait("s1")

        assert calls == ["s1", "s1"]

    @pytest.mark.asyncio
    async def test_crashing_routine_does_not_propagate(self):
        async def runner(session_id, prompt):
            raise RuntimeError("boom")

        strategy = InProcessStrategy(runner)
        await strategy.dispatch("s1", "Prompt")
        await strategy.wait("s1")

        assert not strategy.is_running("s1")

    @pytest.mark.asyncio
    async def test_aclose_cancels_outstanding_tasks(self):
        started = asyncio.Event()
        cancelled = []

        async def runner(session_id, prompt):
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(session_id)
                raise

        strategy = InProcessStrategy(runner)
        await strategy.dispatch("s1", "Prompt")
        await started.wait()

        await strategy.aclose()

        assert cancelled == ["s1"]
        assert not strategy.is_running("s1")


class TestResumeEndpointStrategy:
    @pytest.mark.asyncio
    async def test_posts_session_to_resume_endpoint_with_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        strategy = ResumeEndpointStrategy(
            "http://internal:8000/", "secret", transport=httpx.MockTransport(handler)
        )
        await strategy.dispatch("s1", "Refined prompt")

        request = seen[0]
        assert str(request.url) == "http://internal:8000/api/process-research"
        assert request.headers["x-internal-token"] == "secret"
        assert json.loads(request.content) == {"sessionId": "s1", "prompt": "Refined prompt"}

    @pytest.mark.asyncio
    async def test_no_token_header_when_unset(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        strategy = ResumeEndpointStrategy("http://internal", transport=httpx.MockTransport(handler))
        await strategy.dispatch("s1", "Prompt")

        assert "x-internal-token" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_read_timeout_counts_as_handed_off(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        strategy = ResumeEndpointStrategy("http://internal", transport=httpx.MockTransport(handler))
        await strategy.dispatch("s1", "Prompt")

    @pytest.mark.asyncio
    async def test_connection_errors_and_rejections_are_swallowed(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        def reject(request):
            return httpx.Response(500, text="internal error")

        for handler in (refuse, reject):
            strategy = ResumeEndpointStrategy("http://internal", transport=httpx.MockTransport(handler))
            await strategy.dispatch("s1", "Prompt")


def test_build_background_strategy():
    async def runner(session_id, prompt):
        return None

    assert isinstance(
        build_background_strategy(Settings(background_strategy="in_process"), runner),
        InProcessStrategy,
    )
    resume = build_background_strategy(
        Settings(
            background_strategy="resume_endpoint",
            internal_base_url="http://worker:9000",
            internal_api_token="tok",
        ),
        runner,
    )
    assert isinstance(resume, ResumeEndpointStrategy)
    assert resume.base_url == "http://worker:9000"
    assert resume.token == "tok"

    with pytest.raises(ValueError):
        build_background_strategy(Settings(background_strategy="celery"), runner)
