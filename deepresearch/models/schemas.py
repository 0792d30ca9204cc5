from __future__ import annotations

from datetime import datetime
from typing import Optional

from deepresearch.models.session import CamelModel, RefinementQuestion, ResearchStatus


# --- Requests ---


class StartResearchRequest(CamelModel):
    prompt: str = ""


class SubmitRefinementRequest(CamelModel):
    session_id: str = ""
    question_id: str = ""
    answer: str = ""


class ProcessResearchRequest(CamelModel):
    session_id: str = ""
    prompt: str = ""


# --- Responses ---


class StartResearchResponse(CamelModel):
    session_id: str
    status: ResearchStatus
    refinement_questions: list[RefinementQuestion] = []


class SubmitRefinementResponse(CamelModel):
    session_id: str
    status: ResearchStatus
    next_question: Optional[RefinementQuestion] = None
    refined_prompt: Optional[str] = None


class ProcessResearchResponse(CamelModel):
    success: bool
    session_id: str
    status: ResearchStatus


class ResearchResultsResponse(CamelModel):
    session_id: str
    status: ResearchStatus
    openai_result: Optional[str] = None
    gemini_result: Optional[str] = None
    pdf_url: Optional[str] = None
    error: Optional[str] = None


class SessionSummary(CamelModel):
    id: str
    initial_prompt: str
    status: ResearchStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    email_sent_at: Optional[datetime] = None
    error: Optional[str] = None


class SessionListResponse(CamelModel):
    sessions: list[SessionSummary]
