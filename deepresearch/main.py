from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepresearch.api.deps import build_services
from deepresearch.api.routes import process, refinement, research, results, sessions
from deepresearch.config import settings
from deepresearch.services import logger as log_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    app.state.services = build_services(settings)
    log_service.log_event(
        event_type="app_started",
        message="Deep research service started",
        store=settings.session_store_backend,
        background=settings.background_strategy,
        notifier=settings.notifier_backend,
    )
    yield
    # Shutdown
    await app.state.services.aclose()


app = FastAPI(
    title="Deep Research Assistant",
    description="Dual-provider deep research with refinement and emailed PDF reports",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)
app.include_router(refinement.router)
app.include_router(process.router)
app.include_router(results.router)
app.include_router(sessions.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepresearch"}
