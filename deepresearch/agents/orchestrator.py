from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Protocol
from uuid import uuid4

from deepresearch.agents.providers import ResearchProvider
from deepresearch.agents.refinement_planner import RefinementPlanner, compose_refined_prompt
from deepresearch.errors import (
    AuthenticationRequiredError,
    InvalidRequestError,
    ProviderError,
    ResearchError,
    SessionNotFoundError,
)
from deepresearch.models.session import (
    RefinementQuestion,
    ResearchSession,
    ResearchStatus,
    can_transition,
    utc_now,
)
from deepresearch.services import logger as log_service
from deepresearch.services.report import ReportDelivery
from deepresearch.services.session_store import SessionStore

# Re-reads allowed when a concurrent answer lands between our read and write.
ANSWER_MERGE_ATTEMPTS = 3


class BackgroundDispatcher(Protocol):
    async def dispatch(self, session_id: str, prompt: str) -> None: ...


@dataclass
class StartResult:
    session_id: str
    status: ResearchStatus
    refinement_questions: list[RefinementQuestion] = field(default_factory=list)


@dataclass
class AnswerResult:
    session_id: str
    status: ResearchStatus
    next_question: Optional[RefinementQuestion] = None
    refined_prompt: Optional[str] = None


class ResearchOrchestrator:
    """Drives a research session through its lifecycle.

    Flow:
      1. start: create `pending`, plan refinement, move to `refining` or
         straight to `processing`
      2. answers: collect one answer per question; the last one composes the
         refined prompt and moves to `processing`
      3. research (background): claim, fan out to both providers, record
         `completed`, deliver the report, record `email_sent`

    Every status change is a conditional update on the current status, so a
    transition is applied by exactly one caller even across processes.
    """

    def __init__(
        self,
        store: SessionStore,
        planner: RefinementPlanner,
        openai_provider: ResearchProvider,
        gemini_provider: ResearchProvider,
        delivery: ReportDelivery,
        background: Optional[BackgroundDispatcher] = None,
        research_timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.planner = planner
        self.openai_provider = openai_provider
        self.gemini_provider = gemini_provider
        self.delivery = delivery
        self.background = background
        self.research_timeout_seconds = research_timeout_seconds

    def attach_background(self, background: BackgroundDispatcher) -> None:
        self.background = background

    # --- transitions ---

    async def _transition(
        self,
        session: ResearchSession,
        target: ResearchStatus,
        fields: Optional[dict[str, Any]] = None,
        expected: Optional[dict[str, Any]] = None,
    ) -> Optional[ResearchSession]:
        """Move `session` to `target` if the stored status is still the one we read.

        Returns the updated session, or None when another writer got there first.
        """
        current = session.status
        if not can_transition(current, target):
            raise ResearchError(f"Illegal status transition {current.value} -> {target.value}")

        updated = await self.store.update_if(
            session.id,
            {**(fields or {}), "status": target},
            {**(expected or {}), "status": current},
        )
        if updated is None:
            log_service.log_event(
                event_type="transition_conflict",
                message="Status changed underneath a transition",
                session_id=session.id,
                from_status=current.value,
                to_status=target.value,
            )
            return None

        data = {"error": updated.error} if target == ResearchStatus.FAILED else None
        log_service.log_session_transition(session.id, current.value, target.value, data)
        return updated

    async def _record_failure(self, session: ResearchSession, message: str) -> None:
        try:
            await self._transition(session, ResearchStatus.FAILED, {"error": message})
        except Exception as e:
            log_service.logger.error(
                f"Could not record failure for session {session.id}: {e} (original error: {message})"
            )

    async def _dispatch(self, session_id: str, prompt: str) -> None:
        if self.background is None:
            log_service.log_event(
                event_type="research_not_dispatched",
                message="No background strategy attached; session left in processing",
                session_id=session_id,
            )
            return
        await self.background.dispatch(session_id, prompt)

    # --- public operations ---

    async def start_research(self, user_id: str, user_email: str, prompt: str) -> StartResult:
        if not user_id or not user_email:
            raise AuthenticationRequiredError("Authentication required")
        if not prompt or not prompt.strip():
            raise InvalidRequestError("Prompt is required")

        now = utc_now()
        session = ResearchSession(
            id=str(uuid4()),
            user_id=user_id,
            user_email=user_email,
            initial_prompt=prompt,
            status=ResearchStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        await self.store.create(session)
        log_service.log_session_transition(session.id, None, ResearchStatus.PENDING.value)

        questions = await self.planner.plan_refinement(prompt)
        if questions:
            updated = await self._transition(
                session, ResearchStatus.REFINING, {"refinement_questions": questions}
            )
        else:
            updated = await self._transition(
                session, ResearchStatus.PROCESSING, {"refined_prompt": prompt}
            )
            if updated is not None:
                await self._dispatch(updated.id, prompt)

        if updated is None:
            updated = await self.get_results(session.id)
        return StartResult(
            session_id=updated.id,
            status=updated.status,
            refinement_questions=updated.refinement_questions,
        )

    async def submit_answer(self, session_id: str, question_id: str, answer: str) -> AnswerResult:
        if not session_id or not question_id or not answer or not answer.strip():
            raise InvalidRequestError("sessionId, questionId and answer are required")

        for _ in range(ANSWER_MERGE_ATTEMPTS):
            session = await self.get_results(session_id)
            question = session.find_question(question_id)
            if question is None:
                raise InvalidRequestError(f"Unknown question id: {question_id}")

            if session.status != ResearchStatus.REFINING or question.is_answered:
                # Late or repeated answers never change a session.
                return AnswerResult(
                    session_id=session.id,
                    status=session.status,
                    next_question=(
                        session.next_unanswered_question()
                        if session.status == ResearchStatus.REFINING
                        else None
                    ),
                )

            questions = [
                q.model_copy(update={"answer": answer}) if q.id == question_id else q
                for q in session.refinement_questions
            ]
            guard = {"updated_at": session.updated_at}

            if all(q.is_answered for q in questions):
                refined_prompt = compose_refined_prompt(session.initial_prompt, questions)
                updated = await self._transition(
                    session,
                    ResearchStatus.PROCESSING,
                    {"refinement_questions": questions, "refined_prompt": refined_prompt},
                    expected=guard,
                )
                if updated is None:
                    continue
                await self._dispatch(updated.id, refined_prompt)
                return AnswerResult(
                    session_id=updated.id,
                    status=updated.status,
                    refined_prompt=refined_prompt,
                )

            updated = await self.store.update_if(
                session.id,
                {"refinement_questions": questions},
                {"status": ResearchStatus.REFINING, **guard},
            )
            if updated is None:
                continue
            return AnswerResult(
                session_id=updated.id,
                status=updated.status,
                next_question=updated.next_unanswered_question(),
            )

        raise ResearchError(f"Too many concurrent updates to session {session_id}")

    async def _fan_out(self, prompt: str) -> tuple[str, str]:
        """Run both providers concurrently; succeed only if both do."""
        try:
            async with asyncio.timeout(self.research_timeout_seconds):
                results = await asyncio.gather(
                    self.openai_provider.research(prompt),
                    self.gemini_provider.research(prompt),
                    return_exceptions=True,
                )
        except TimeoutError as e:
            raise ResearchError(
                f"Research timed out after {self.research_timeout_seconds} seconds"
            ) from e

        for provider, result in zip((self.openai_provider, self.gemini_provider), results):
            if isinstance(result, ResearchError):
                raise result
            if isinstance(result, BaseException):
                raise ProviderError(provider.name, str(result) or type(result).__name__) from result
        return results[0], results[1]

    async def run_research(self, session_id: str, prompt: Optional[str] = None) -> ResearchStatus:
        """Research, record and deliver one session. Safe to call more than once."""
        session = await self.get_results(session_id)
        if session.status != ResearchStatus.PROCESSING:
            log_service.log_event(
                event_type="research_skipped",
                message="Session is not awaiting research",
                session_id=session_id,
                status=session.status.value,
            )
            return session.status

        claimed = await self.store.update_if(
            session_id,
            {"research_started_at": utc_now()},
            {"status": ResearchStatus.PROCESSING, "research_started_at": None},
        )
        if claimed is None:
            log_service.log_event(
                event_type="research_claim_lost",
                message="Research already started elsewhere",
                session_id=session_id,
            )
            current = await self.store.get(session_id)
            return current.status if current else session.status

        research_prompt = prompt or claimed.refined_prompt or claimed.initial_prompt
        log_service.log_event(
            event_type="research_started",
            message="Research fan-out started",
            session_id=session_id,
            prompt=research_prompt[:100],
        )

        # Past the claim nothing else will move this session, so every
        # exception must end in a recorded failure.
        last_known = claimed
        try:
            openai_result, gemini_result = await self._fan_out(research_prompt)

            completed_at = utc_now()
            completed = await self._transition(
                claimed,
                ResearchStatus.COMPLETED,
                {
                    "openai_result": openai_result,
                    "gemini_result": gemini_result,
                    "completed_at": completed_at,
                },
            )
            if completed is None:
                current = await self.store.get(session_id)
                return current.status if current else claimed.status
            last_known = completed

            await self.delivery.deliver(completed)

            email_sent_at = max(utc_now(), completed_at + timedelta(microseconds=1))
            sent = await self._transition(
                completed, ResearchStatus.EMAIL_SENT, {"email_sent_at": email_sent_at}
            )
            return sent.status if sent else completed.status
        except Exception as e:
            await self._record_failure(last_known, str(e))
            return ResearchStatus.FAILED

    async def get_results(self, session_id: str) -> ResearchSession:
        if not session_id:
            raise InvalidRequestError("sessionId is required")
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def list_sessions(self, user_id: str, limit: int = 50) -> list[ResearchSession]:
        if not user_id:
            raise AuthenticationRequiredError("Authentication required")
        return await self.store.list_for_user(user_id, limit)
