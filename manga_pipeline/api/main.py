"""FastAPI application for the manga generation pipeline."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from ..core.correlation import CorrelationScope, resolve_correlation_id
from ..core.metrics import PerformanceTimer
from .arq_pool import close_pool, get_pool, open_pool
from .auth.routes import router as auth_router
from .config import ENVIRONMENT, LOG_JSON, LOG_LEVEL, SERVICE_NAME
from .errors import internal_error_response, register_exception_handlers
from .logging import configure_logging
from .routes import preferences, stories, status, workflow
from .services.context import PipelineContext, build_pipeline, create_store
from .services.events import ArqEventTransport

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def create_app(pipeline: Optional[PipelineContext] = None) -> FastAPI:
    """Build the application.

    When ``pipeline`` is given it is used as is and nothing is opened at
    startup; otherwise the store and the arq pool are created in the lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan - startup and shutdown."""
        if pipeline is not None:
            app.state.pipeline = pipeline
            yield
            return

        configure_logging(json_format=LOG_JSON, level=LOG_LEVEL)
        store = await create_store()
        await open_pool()
        app.state.pipeline = build_pipeline(store, ArqEventTransport(get_pool))
        logger.info(f"{SERVICE_NAME} API started ({ENVIRONMENT})")

        yield

        await close_pool()
        await store.close()

    app = FastAPI(
        title="Manga Generation Pipeline API",
        description="""
Generate serialized manga stories and illustrated episodes from a taste profile.

## Workflow
1. POST `/preferences` with your taste profile
2. POST `/workflow/start` to generate one or more stories
3. Poll GET `/status/{requestId}` or GET `/workflow/{workflowId}`
4. Read stories and episodes under `/stories`, continue a story with POST `/stories/{id}/episodes`
        """,
        version="0.1.0",
        lifespan=lifespan,
    )
    if pipeline is not None:
        app.state.pipeline = pipeline

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        """Assign the request id, scope the correlation context to it, catch anything unhandled."""
        request_id = resolve_correlation_id(
            request.headers.get(REQUEST_ID_HEADER),
            request.headers.get("X-Correlation-ID"),
        )
        request.state.request_id = request_id
        timer = PerformanceTimer("http_request")
        with CorrelationScope(request_id):
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    f"Unhandled error on {request.method} {request.url.path}: {e}",
                    exc_info=e,
                )
                response = internal_error_response(request, e)
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={"duration": round(timer.stop() / 1000, 3)},
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    register_exception_handlers(app)

    app.include_router(auth_router)  # No prefix - already has /auth
    app.include_router(preferences.router, prefix="/preferences", tags=["Preferences"])
    app.include_router(workflow.router, prefix="/workflow", tags=["Workflow"])
    app.include_router(stories.router, prefix="/stories", tags=["Stories"])
    app.include_router(status.router, prefix="/status", tags=["Status"])

    @app.get("/health", tags=["Health"])
    async def health_check(request: Request):
        """Health check endpoint."""
        body = {"status": "healthy", "service": SERVICE_NAME, "environment": ENVIRONMENT}
        current = getattr(request.app.state, "pipeline", None)
        if current is not None:
            body["circuitBreakers"] = current.breakers.get_status()
        return body

    return app


app = create_app()
