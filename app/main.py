"""
FastAPI application for the group formation dialog API.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from app.config import settings
from app.api.dependencies import get_workflow_registry
from app.api.v1.routers import group_formation
from app.infrastructure.external_api_client import get_api_client
from app.middleware.error_handler import ErrorHandlerMiddleware

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Log the effective configuration on startup; on shutdown close every
    open dialog and the grouping service connection pool.
    """
    logger.info(f"{settings.app_name} v{settings.app_version} starting (log level {settings.log_level})")
    logger.info(
        f"Grouping service at {settings.grouping_api_base_url}, "
        f"{settings.max_retry_attempts} attempts per request"
    )
    logger.info(
        f"Groups need {settings.min_viable_plots} plots and "
        f"{settings.min_group_area_ha:g} ha to avoid size warnings"
    )

    yield

    registry = get_workflow_registry()
    open_dialogs = len(registry)
    for dialog_id in registry.dialog_ids():
        registry.close(dialog_id)
    if open_dialogs:
        logger.info(f"Closed {open_dialogs} open dialog(s)")
    await get_api_client().close()
    logger.info("Grouping service client closed")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    Preview, edit and confirm farmer groups for a cluster and season.

    A dialog fetches a proposed grouping from the grouping service. The
    manager then reviews it on a map, adjusts names, supervisors and plot
    membership, and submits the confirmed groups.

    ## Dialog flow

    1. `POST /dialogs` opens a dialog and loads the preview
    2. Edit endpoints change the local copy only; nothing is sent upstream
    3. `POST /dialogs/{id}/recalculate` fetches a fresh preview and drops edits
    4. `POST /dialogs/{id}/submit` creates the groups once validation has no errors

    Grouping service calls are retried with exponential backoff on 5xx and
    connection failures.
    """,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ErrorHandlerMiddleware)

app.include_router(group_formation.router, prefix="/api/v1")


@app.get("/", tags=["health"])
async def root():
    """Service name and version."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
    }


@app.get("/health", tags=["health"])
async def health_check():
    """Liveness probe with the number of open dialogs."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "openDialogs": len(get_workflow_registry()),
    }
