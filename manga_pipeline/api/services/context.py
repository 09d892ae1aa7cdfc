"""
Composition root for the pipeline.

Every process (API or worker) builds one PipelineContext at startup and
passes it to routes and handlers. Nothing here is a module-level
singleton, so tests build their own context around fakes.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ...config.resilience import DEFAULT_BREAKER, EXTERNAL_API_RETRY, STORE_RETRY
from ...core.generation import ImageGenerator, TextGenerator
from ...core.insights_client import InsightsClient
from ...core.metrics import MetricsRecorder
from ...core.resilience import BreakerRegistry, RetryHandler
from ..config import (
    CONTENT_DIR,
    DATABASE_URL,
    ENVIRONMENT,
    QLOO_API_KEY,
    QLOO_API_URL,
    QLOO_TIMEOUT,
    SERVICE_NAME,
)
from ..database.repository import Repositories
from ..database.store import EntityStore, MemoryEntityStore, PostgresEntityStore, RetryingEntityStore
from .content_store import ContentStore, LocalContentStore
from .events import EventPublisher, EventTransport

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Process-wide dependencies shared by routes and stage handlers."""

    repos: Repositories
    publisher: EventPublisher
    content: ContentStore
    text_generator: TextGenerator
    image_generator: ImageGenerator
    insights: InsightsClient
    breakers: BreakerRegistry
    metrics: MetricsRecorder


async def create_store() -> EntityStore:
    """Postgres when DATABASE_URL is set, otherwise the in-memory store."""
    if not DATABASE_URL:
        logger.warning("DATABASE_URL not set, using in-memory entity store")
        return MemoryEntityStore()

    from ..database.db import create_pg_pool, init_db

    await init_db()
    pool = await create_pg_pool()
    return PostgresEntityStore(pool)


def build_pipeline(
    store: EntityStore,
    transport: EventTransport,
    *,
    content: Optional[ContentStore] = None,
    metrics: Optional[MetricsRecorder] = None,
    breakers: Optional[BreakerRegistry] = None,
    text_generator: Optional[TextGenerator] = None,
    image_generator: Optional[ImageGenerator] = None,
    insights: Optional[InsightsClient] = None,
) -> PipelineContext:
    metrics = metrics or MetricsRecorder(environment=ENVIRONMENT, service=SERVICE_NAME)
    breakers = breakers or BreakerRegistry(DEFAULT_BREAKER, metrics=metrics)
    external_retry = RetryHandler(EXTERNAL_API_RETRY, metrics=metrics)
    store_retry = RetryHandler(STORE_RETRY, metrics=metrics)

    return PipelineContext(
        repos=Repositories.from_store(RetryingEntityStore(store, store_retry)),
        publisher=EventPublisher(transport),
        content=content or LocalContentStore(CONTENT_DIR),
        text_generator=text_generator or TextGenerator(breakers, external_retry, metrics),
        image_generator=image_generator or ImageGenerator(breakers, external_retry, metrics),
        insights=insights
        or InsightsClient(
            QLOO_API_URL,
            QLOO_API_KEY,
            breakers=breakers,
            retry=external_retry,
            timeout=QLOO_TIMEOUT,
            metrics=metrics,
        ),
        breakers=breakers,
        metrics=metrics,
    )
