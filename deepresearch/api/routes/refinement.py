from __future__ import annotations

from fastapi import APIRouter, Depends

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.api.deps import get_orchestrator, http_error
from deepresearch.models.schemas import SubmitRefinementRequest, SubmitRefinementResponse
from deepresearch.services import logger as log_service

router = APIRouter(prefix="/api/refinement", tags=["refinement"])


@router.post("", response_model=SubmitRefinementResponse, response_model_exclude_none=True)
async def submit_refinement(
    request: SubmitRefinementRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    try:
        result = await orchestrator.submit_answer(
            request.session_id, request.question_id, request.answer
        )
    except Exception as e:
        log_service.log_event(
            event_type="submit_refinement_failed",
            message="Could not submit refinement answer",
            session_id=request.session_id,
            question_id=request.question_id,
            error=str(e),
        )
        raise http_error(e, "Failed to submit refinement") from e

    return SubmitRefinementResponse(
        session_id=result.session_id,
        status=result.status,
        next_question=result.next_question,
        refined_prompt=result.refined_prompt,
    )
