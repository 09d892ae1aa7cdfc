"""
Image generation stage.

Handles "Image Generation Requested": splits a completed episode into at
most IMAGE_CONSTANTS["max_panels"] scenes, illustrates each one, stores the
panels and assembles them into episode.pdf. A panel that fails is skipped;
an episode with no panels at all fails the stage.

Image progress is tracked in the episode's imageStatus fields so a failure
here never changes the episode's own (text) status.
"""

import asyncio
import logging
from typing import Any

from ...config import IMAGE_CONSTANTS
from ...core.content_parsing import extract_visual_description, split_scenes
from ...core.errors import ExternalServiceError, NotFoundError, ValidationError
from ...core.metrics import PerformanceTimer
from ...core.modules.panel_illustrator import assemble_episode_pdf
from ..database.repository import EpisodeUpdate
from ..logging import workflow_logger
from ..models.enums import EntityType, GenerationStatus
from .content_store import episode_pdf_path, image_path, parse_episode_path
from .context import PipelineContext
from .events import ImageGenerationRequested

logger = logging.getLogger(__name__)

STAGE = "image_generation"
PANEL_FILENAME = "panel.png"


async def handle_image_generation(ctx: PipelineContext, detail: ImageGenerationRequested) -> dict[str, Any]:
    repos = ctx.repos
    user_id, story_id, episode_number = parse_episode_path(detail.episode_content_path)
    if user_id != detail.user_id:
        raise ValidationError("Episode content path does not belong to the requesting user")

    episode = await repos.episodes.get(story_id, episode_number)
    if episode is None:
        raise NotFoundError(f"Episode {episode_number} of story {story_id} not found", code="EPISODE_NOT_FOUND")
    if episode.episode_id != detail.episode_id:
        raise ValidationError(f"Episode {detail.episode_id} does not match {detail.episode_content_path}")
    if episode.status != GenerationStatus.COMPLETED:
        raise ValidationError(f"Episode {episode.episode_id} is {episode.status}, images need a completed episode")

    fields = {"user_id": user_id, "story_id": story_id, "episode_id": episode.episode_id}
    if episode.pdf_path:
        workflow_logger.stage_skipped(STAGE, "images already generated", **fields)
        return {"status": "skipped", "episodeId": episode.episode_id, "pdfPath": episode.pdf_path}

    workflow_logger.stage_started(STAGE, **fields)
    timer = PerformanceTimer(STAGE)
    try:
        await repos.episodes.update(story_id, episode_number, EpisodeUpdate(image_status=GenerationStatus.PROCESSING))

        content = await ctx.content.get_text(detail.episode_content_path)
        scenes = split_scenes(content, max_scenes=IMAGE_CONSTANTS["max_panels"])
        if not scenes:
            raise ValidationError(f"Episode {episode.episode_id} has no scenes to illustrate")

        panels: list[bytes] = []
        for index, scene in enumerate(scenes, start=1):
            try:
                data = await ctx.image_generator.generate_panel(extract_visual_description(scene), index)
            except Exception as e:
                logger.warning(f"Skipping panel {index} of episode {episode.episode_id}: {e}", extra=fields)
                continue
            await ctx.content.put(
                image_path(user_id, story_id, episode_number, index, PANEL_FILENAME),
                data,
                content_type="image/png",
                metadata={"episodeId": episode.episode_id, "panel": str(index)},
            )
            panels.append(data)

        if not panels:
            raise ExternalServiceError(
                f"No panels could be generated for episode {episode.episode_id}",
                service="image-generation",
                retryable=True,
            )

        pdf = await asyncio.to_thread(assemble_episode_pdf, panels, episode.title or "")
        pdf_path = episode_pdf_path(user_id, story_id, episode_number)
        await ctx.content.put(
            pdf_path,
            pdf,
            content_type="application/pdf",
            metadata={"episodeId": episode.episode_id, "panels": str(len(panels))},
        )
        await repos.episodes.update(
            story_id,
            episode_number,
            EpisodeUpdate(image_status=GenerationStatus.COMPLETED, pdf_path=pdf_path, image_count=len(panels)),
        )
        await ctx.publisher.publish_status(
            user_id, episode.episode_id, EntityType.IMAGE, GenerationStatus.COMPLETED, episode.episode_id
        )
    except Exception as e:
        workflow_logger.stage_failed(STAGE, e, **fields)
        ctx.metrics.record_generation("image", False, timer.stop())
        message = str(e) or type(e).__name__
        try:
            await repos.episodes.update(
                story_id,
                episode_number,
                EpisodeUpdate(image_status=GenerationStatus.FAILED, image_error_message=message),
            )
        except Exception as cleanup_error:
            workflow_logger.cleanup_failed(STAGE, cleanup_error, **fields)
        await ctx.publisher.publish_status(
            user_id, episode.episode_id, EntityType.IMAGE, GenerationStatus.FAILED, episode.episode_id, message
        )
        raise

    duration_ms = timer.stop()
    ctx.metrics.record_generation("image", True, duration_ms)
    workflow_logger.stage_completed(STAGE, duration_ms / 1000, **fields)
    return {
        "status": "completed",
        "episodeId": episode.episode_id,
        "pdfPath": pdf_path,
        "imageCount": len(panels),
    }
