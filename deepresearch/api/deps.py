from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from deepresearch.agents.orchestrator import ResearchOrchestrator
from deepresearch.agents.providers import build_providers
from deepresearch.agents.refinement_planner import RefinementPlanner
from deepresearch.config import Settings
from deepresearch.errors import (
    AuthenticationRequiredError,
    InvalidRequestError,
    SessionNotFoundError,
)
from deepresearch.llm_client import get_openai_client
from deepresearch.services.background import BackgroundStrategy, build_background_strategy
from deepresearch.services.notifier import build_notifier
from deepresearch.services.pdf_renderer import PdfReportRenderer
from deepresearch.services.report import ReportDelivery
from deepresearch.services.session_store import SessionStore, build_session_store


@dataclass
class Identity:
    user_id: str
    user_email: str


@dataclass
class ServiceContainer:
    """Application-scoped collaborators, built once at startup."""

    settings: Settings
    store: SessionStore
    orchestrator: ResearchOrchestrator
    background: BackgroundStrategy

    async def aclose(self) -> None:
        await self.background.aclose()
        await self.store.aclose()


def build_services(config: Settings) -> ServiceContainer:
    store = build_session_store(config)
    planner = RefinementPlanner(get_openai_client(config), config.openai_refinement_model)
    openai_provider, gemini_provider = build_providers(config)
    delivery = ReportDelivery(PdfReportRenderer(), build_notifier(config))
    orchestrator = ResearchOrchestrator(
        store,
        planner,
        openai_provider,
        gemini_provider,
        delivery,
        research_timeout_seconds=config.research_timeout_seconds,
    )
    background = build_background_strategy(config, orchestrator.run_research)
    orchestrator.attach_background(background)
    return ServiceContainer(config, store, orchestrator, background)


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return services


def get_orchestrator(request: Request) -> ResearchOrchestrator:
    return get_services(request).orchestrator


def get_settings(request: Request) -> Settings:
    return get_services(request).settings


def get_identity(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
) -> Identity:
    if not x_user_id or not x_user_email:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Identity(user_id=x_user_id, user_email=x_user_email)


def http_error(exc: Exception, detail: str = "Internal server error") -> HTTPException:
    """Map a service error onto the HTTP status the client sees.

    Anything that is not a client error becomes a 500 carrying `detail`.
    """
    if isinstance(exc, AuthenticationRequiredError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, InvalidRequestError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, SessionNotFoundError):
        return HTTPException(status_code=404, detail="Research session not found")
    return HTTPException(status_code=500, detail=detail)
