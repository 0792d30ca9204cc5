from __future__ import annotations

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.api.deps import get_orchestrator, get_settings, http_error
from deepresearch.config import Settings
from deepresearch.errors import ResearchError
from deepresearch.models.schemas import ProcessResearchRequest, ProcessResearchResponse
from deepresearch.models.session import ResearchStatus

router = APIRouter(prefix="/api/process-research", tags=["internal"])


@router.post("", response_model=ProcessResearchResponse)
async def process_research(
    request: ProcessResearchRequest,
    x_internal_token: Optional[str] = Header(default=None),
    config: Settings = Depends(get_settings),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """Run research and delivery for a session to completion (internal)."""
    expected = config.internal_api_token
    if expected and not secrets.compare_digest(x_internal_token or "", expected):
        raise HTTPException(status_code=401, detail="Invalid internal token")
    if not request.session_id:
        raise HTTPException(status_code=400, detail="sessionId is required")

    try:
        status = await orchestrator.run_research(request.session_id, request.prompt or None)
    except ResearchError as e:
        raise http_error(e) from e

    return ProcessResearchResponse(
        success=status != ResearchStatus.FAILED,
        session_id=request.session_id,
        status=status,
    )
