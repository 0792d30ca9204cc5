from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.api.deps import Identity, get_identity, get_orchestrator, http_error
from deepresearch.errors import ResearchError
from deepresearch.models.schemas import SessionListResponse, SessionSummary

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("", response_model=SessionListResponse, response_model_exclude_none=True)
async def list_sessions(
    limit: int = Query(default=50, ge=1, le=200),
    identity: Identity = Depends(get_identity),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """The caller's research history, newest first."""
    try:
        sessions = await orchestrator.list_sessions(identity.user_id, limit)
    except ResearchError as e:
        raise http_error(e) from e

    return SessionListResponse(
        sessions=[
            SessionSummary(
                id=s.id,
                initial_prompt=s.initial_prompt,
                status=s.status,
                created_at=s.created_at,
                completed_at=s.completed_at,
                email_sent_at=s.email_sent_at,
                error=s.error,
            )
            for s in sessions
        ]
    )
