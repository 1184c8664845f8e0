"""FastAPI application entrypoint.

Configures CORS, includes routers, maps engine errors to JSON responses and
exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .exceptions import EngineError, ValidationError
from .routers import attribution as attribution_router
from .routers import events as events_router
from .routers import experiments as experiments_router
from .routers import goals as goals_router
from .telemetry import init_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="conversionlab API",
        description="""
        conversionlab runs A/B experiments and multi-touch attribution over
        short-link traffic.

        This API provides endpoints for:
        - Click and conversion event ingestion
        - Conversion goals and per-goal stats
        - Conversion journeys and attribution under six models
        - Experiment lifecycle, variant assignment and statistical scoring

        ## Identity

        Owner-scoped endpoints read the authenticated owner from the
        `X-Owner-Id` header set by the gateway. Visitor endpoints read the
        session from `X-Session-Id` or the request body.
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(events_router.router)
    app.include_router(goals_router.router)
    app.include_router(attribution_router.router)
    app.include_router(experiments_router.router)

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        content = {"error": exc.code, "detail": exc.to_user_message()}
        if isinstance(exc, ValidationError) and exc.field:
            content["field"] = exc.field
        if exc.status_code >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        """Liveness probe; no authentication, no database access."""
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        status = init_observability()
        logger.info(f"[STARTUP] Observability: {status}")

    return app


app = create_app()
