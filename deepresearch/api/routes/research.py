from __future__ import annotations

from fastapi import APIRouter, Depends

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.api.deps import Identity, get_identity, get_orchestrator, http_error
from deepresearch.models.schemas import StartResearchRequest, StartResearchResponse
from deepresearch.services import logger as log_service

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("", response_model=StartResearchResponse, response_model_exclude_none=True)
async def start_research(
    request: StartResearchRequest,
    identity: Identity = Depends(get_identity),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """Create a session; returns refinement questions when the prompt needs them."""
    try:
        result = await orchestrator.start_research(
            identity.user_id, identity.user_email, request.prompt
        )
    except Exception as e:
        log_service.log_event(
            event_type="start_research_failed",
            message="Could not start research",
            user_id=identity.user_id,
            error=str(e),
        )
        raise http_error(e, "Failed to start research session") from e

    return StartResearchResponse(
        session_id=result.session_id,
        status=result.status,
        refinement_questions=result.refinement_questions,
    )
