from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sse_starlette.sse import EventSourceResponse

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.api.deps import get_orchestrator, get_settings, http_error
from deepresearch.config import Settings
from deepresearch.models.schemas import ResearchResultsResponse
from deepresearch.services import logger as log_service
from deepresearch.services import streaming

router = APIRouter(prefix="/api/results", tags=["results"])

FETCH_FAILED = "Failed to fetch results"


def _require_session_id(session_id: Optional[str]) -> str:
    if not session_id:
        raise HTTPException(status_code=400, detail="sessionId is required")
    return session_id


@router.get("", response_model=ResearchResultsResponse, response_model_exclude_none=True)
async def get_results(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    session_id = _require_session_id(session_id)
    try:
        session = await orchestrator.get_results(session_id)
    except Exception as e:
        log_service.log_event(
            event_type="fetch_results_failed",
            message="Could not fetch results",
            session_id=session_id,
            error=str(e),
        )
        raise http_error(e, FETCH_FAILED) from e

    return ResearchResultsResponse(
        session_id=session.id,
        status=session.status,
        openai_result=session.openai_result,
        gemini_result=session.gemini_result,
        pdf_url=session.pdf_url,
        error=session.error,
    )


@router.get("/stream")
async def stream_results(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    config: Settings = Depends(get_settings),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """SSE feed of status changes; closes once the session is terminal."""
    session_id = _require_session_id(session_id)
    try:
        await orchestrator.get_results(session_id)
    except Exception as e:
        log_service.log_event(
            event_type="fetch_results_failed",
            message="Could not open results stream",
            session_id=session_id,
            error=str(e),
        )
        raise http_error(e, FETCH_FAILED) from e

    async def load():
        return await orchestrator.store.get(session_id)

    async def event_generator():
        try:
            async for event in streaming.watch_session(
                load, interval_seconds=config.results_stream_interval_seconds
            ):
                yield {"event": event.event.value, "data": json.dumps(event.data)}
        except Exception as e:
            log_service.log_event(
                event_type="stream_error",
                message="Results stream failed",
                session_id=session_id,
                error=str(e),
            )
            error_event = streaming.error("Results stream failed unexpectedly.", session_id)
            yield {"event": error_event.event.value, "data": json.dumps(error_event.data)}

    return EventSourceResponse(event_generator())
