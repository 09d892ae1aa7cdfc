"""
ARQ worker that consumes pipeline events.

Every published event is one ``handle_event_task`` job. The task validates
the event, scopes the correlation id, and dispatches by detail-type to the
stage handler. Retryable failures are deferred and tried again up to
``max_tries``; everything else fails the job immediately.

Run with: arq manga_pipeline.worker.WorkerSettings
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from arq import Retry, cron
from dotenv import load_dotenv

# Load environment variables before importing app modules
load_dotenv()

from manga_pipeline.api.arq_pool import redis_settings  # noqa: E402
from manga_pipeline.api.config import LOG_JSON, LOG_LEVEL, STALE_REQUEST_MINUTES  # noqa: E402
from manga_pipeline.api.logging import configure_logging  # noqa: E402
from manga_pipeline.api.services.context import PipelineContext, build_pipeline, create_store  # noqa: E402
from manga_pipeline.api.services.episode_generation import (  # noqa: E402
    handle_continue_episode,
    handle_episode_generation,
)
from manga_pipeline.api.services.events import (  # noqa: E402
    ArqEventTransport,
    DetailType,
    Event,
    validate_event,
)
from manga_pipeline.api.services.image_generation import handle_image_generation  # noqa: E402
from manga_pipeline.api.services.story_generation import (  # noqa: E402
    handle_batch_story_generation,
    handle_story_generation,
)
from manga_pipeline.config.resilience import DEFAULT_RETRY  # noqa: E402
from manga_pipeline.core.correlation import CorrelationScope, resolve_correlation_id  # noqa: E402
from manga_pipeline.core.errors import EventValidationError  # noqa: E402
from manga_pipeline.core.metrics import PerformanceTimer  # noqa: E402
from manga_pipeline.core.resilience import is_retryable  # noqa: E402
from manga_pipeline.core.types import CamelModel, to_timestamp  # noqa: E402

logger = logging.getLogger(__name__)

MAX_TRIES = 3

# Deferral before retry n is RETRY_DEFER_SECONDS * n
RETRY_DEFER_SECONDS = 30

Handler = Callable[[PipelineContext, Any], Awaitable[dict[str, Any]]]


async def record_status_event(pipeline: PipelineContext, detail: CamelModel) -> dict[str, Any]:
    """Status events have no follow-on work. Log and count them."""
    wire = detail.to_wire()
    status = str(wire.get("status", "RECORDED"))
    detail_type = type(detail).__name__
    logger.info(
        f"{detail_type}: {status}",
        extra={
            "user_id": wire.get("userId"),
            "request_id": wire.get("requestId"),
            "workflow_id": wire.get("workflowId"),
            "story_id": wire.get("storyId"),
        },
    )
    pipeline.metrics.record_status_event(detail_type, status)
    return {"status": "recorded", "detailType": detail_type}


HANDLERS: dict[str, Handler] = {
    DetailType.STORY_GENERATION_REQUESTED: handle_story_generation,
    DetailType.BATCH_STORY_GENERATION_REQUESTED: handle_batch_story_generation,
    DetailType.EPISODE_GENERATION_REQUESTED: handle_episode_generation,
    DetailType.CONTINUE_EPISODE_REQUESTED: handle_continue_episode,
    DetailType.IMAGE_GENERATION_REQUESTED: handle_image_generation,
    DetailType.GENERATION_STATUS_UPDATED: record_status_event,
    DetailType.BATCH_WORKFLOW_STATUS_UPDATED: record_status_event,
    DetailType.EPISODE_CONTINUATION_STATUS_UPDATED: record_status_event,
    DetailType.USER_REGISTERED: record_status_event,
}


async def handle_event_task(ctx: dict[str, Any], message: dict[str, Any]) -> dict[str, Any]:
    """
    ARQ task for one pipeline event.

    Args:
        ctx: ARQ context (contains job_id, job_try, the pipeline, etc.)
        message: The event envelope as published

    Returns:
        The stage handler's result, or a rejected/ignored marker

    Raises:
        Retry: a retryable failure with tries left
    """
    pipeline: PipelineContext = ctx["pipeline"]
    job_try = ctx.get("job_try", 1)
    detail_type = str(message.get("detail-type", "unknown")) if isinstance(message, dict) else "unknown"

    try:
        event = Event.from_message(message)
        detail = validate_event(event)
    except EventValidationError as e:
        # Invalid events never become valid; retrying would only repeat the rejection
        logger.warning(f"Rejected {detail_type} event: {e.message}", extra={"detail_type": detail_type})
        pipeline.metrics.record_event_rejected(detail_type)
        return {"status": "rejected", "detailType": detail_type, "error": e.message}

    handler = HANDLERS.get(event.detail_type)
    if detail is None or handler is None:
        logger.info(f"No handler for {event.detail_type} event {event.id}, ignoring")
        return {"status": "ignored", "detailType": event.detail_type}

    correlation_id = resolve_correlation_id(event.detail.get("correlationId"), event.id)
    with CorrelationScope(correlation_id):
        logger.info(
            f"Handling {event.detail_type} event {event.id} (try {job_try})",
            extra={"detail_type": event.detail_type, "attempt": job_try},
        )
        timer = PerformanceTimer(event.detail_type)
        try:
            result = await handler(pipeline, detail)
        except Exception as e:
            pipeline.metrics.record_handler_error(event.detail_type, getattr(e, "code", type(e).__name__))
            if is_retryable(e, DEFAULT_RETRY) and job_try < MAX_TRIES:
                logger.warning(
                    f"{event.detail_type} event {event.id} failed on try {job_try}, retrying: {e}",
                    extra={"detail_type": event.detail_type, "attempt": job_try},
                )
                raise Retry(defer=RETRY_DEFER_SECONDS * job_try) from e
            logger.error(
                f"{event.detail_type} event {event.id} failed permanently: {e}",
                extra={"detail_type": event.detail_type, "attempt": job_try},
            )
            # Re-raise so ARQ marks the job as failed
            raise
        finally:
            pipeline.metrics.record_handler_duration(event.detail_type, timer.stop())

    logger.info(f"Handled {event.detail_type} event {event.id}", extra={"detail_type": event.detail_type})
    return result


async def fail_stale_requests_task(ctx: dict[str, Any]) -> dict[str, Any]:
    """
    Cron task that fails generation requests stuck in PROCESSING.

    A request untouched for STALE_REQUEST_MINUTES belongs to a worker that
    died or an event that was dropped.
    """
    pipeline: PipelineContext = ctx["pipeline"]
    cutoff = to_timestamp(datetime.now(timezone.utc) - timedelta(minutes=STALE_REQUEST_MINUTES))
    try:
        count = await pipeline.repos.requests.fail_stale(cutoff)
    except Exception as e:
        logger.error(f"Failed to clean up stale requests: {e}")
        return {"failed_requests": 0, "error": str(e)}
    if count > 0:
        logger.info(f"Marked {count} stale generation request(s) as failed")
    return {"failed_requests": count}


async def startup(ctx: dict[str, Any]) -> None:
    """Called when worker starts up."""
    configure_logging(json_format=LOG_JSON, level=LOG_LEVEL)
    logger.info("ARQ worker starting up")

    # Jobs that were running when a previous worker crashed must be picked up again
    await _cleanup_stale_redis_keys(ctx)

    store = await create_store()
    ctx["store"] = store
    ctx["pipeline"] = build_pipeline(store, ArqEventTransport(lambda: ctx["redis"]))


async def _cleanup_stale_redis_keys(ctx: dict[str, Any]) -> None:
    """Clear arq:in-progress:* keys left by a crashed worker (cron keys excepted)."""
    redis = ctx.get("redis")
    if not redis:
        logger.warning("Redis connection not available in context, skipping Redis cleanup")
        return

    try:
        cleaned = 0
        for key in await redis.keys("arq:in-progress:*"):
            if b"cron:" in key:
                continue
            await redis.delete(key)
            cleaned += 1
        if cleaned > 0:
            logger.info(f"Startup Redis cleanup: removed {cleaned} stale in-progress key(s)")
    except Exception as e:
        logger.error(f"Failed Redis cleanup: {e}")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Called when worker shuts down."""
    logger.info("ARQ worker shutting down")
    store = ctx.get("store")
    if store is not None:
        await store.close()


class WorkerSettings:
    """ARQ worker configuration."""

    functions = [handle_event_task]

    cron_jobs = [
        cron(fail_stale_requests_task, minute={0, 15, 30, 45}),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = redis_settings()

    max_jobs = 10
    job_timeout = 600  # 10 minutes max per event
    max_tries = MAX_TRIES
