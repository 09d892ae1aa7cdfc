"""Unit tests for the image stage."""

import pytest

from manga_pipeline.api.models.enums import GenerationStatus
from manga_pipeline.api.services.episode_generation import handle_episode_generation
from manga_pipeline.api.services.events import (
    DetailType,
    EpisodeGenerationRequested,
    ImageGenerationRequested,
    validate_event,
)
from manga_pipeline.api.services.image_generation import handle_image_generation
from manga_pipeline.core.errors import ExternalServiceError, ValidationError

from .factories import USER_ID, metric_names, png_bytes, seed_story


async def _completed_episode(pipeline, transport, preferences, insights):
    """Write episode 1 and return the image request it published."""
    await pipeline.repos.preferences.create(USER_ID, preferences, insights)
    story = await seed_story(pipeline)
    await handle_episode_generation(
        pipeline,
        EpisodeGenerationRequested(
            user_id=USER_ID,
            story_id=story.story_id,
            story_content_path=story.content_path,
            episode_number=1,
        ),
    )
    return validate_event(transport.of_type(DetailType.IMAGE_GENERATION_REQUESTED)[-1])


class TestImageGeneration:
    """Tests for "Image Generation Requested"."""

    @pytest.mark.asyncio
    async def test_illustrates_each_scene_and_builds_pdf(
        self, pipeline, transport, image_generator, preferences, insights, metric_data
    ):
        detail = await _completed_episode(pipeline, transport, preferences, insights)

        result = await handle_image_generation(pipeline, detail)

        assert result["status"] == "completed"
        assert result["imageCount"] == 2
        assert image_generator.generate_panel.call_count == 2
        first_scene, first_index = image_generator.generate_panel.call_args_list[0].args
        assert first_index == 1
        assert "broken bridge" in first_scene

        episode = await pipeline.repos.episodes.get("story-1", 1)
        assert episode.image_status == GenerationStatus.COMPLETED
        assert episode.image_count == 2
        assert episode.pdf_path == f"episodes/{USER_ID}/story-1/1/episode.pdf"
        assert (await pipeline.content.get(episode.pdf_path)).startswith(b"%PDF")
        assert await pipeline.content.list(f"images/{USER_ID}/story-1/1/") == [
            f"images/{USER_ID}/story-1/1/generated/001-panel.png",
            f"images/{USER_ID}/story-1/1/generated/002-panel.png",
        ]
        assert "ImageGenerationSuccess" in metric_names(metric_data)

    @pytest.mark.asyncio
    async def test_failed_panel_is_skipped(self, pipeline, transport, image_generator, preferences, insights):
        detail = await _completed_episode(pipeline, transport, preferences, insights)
        image_generator.generate_panel.side_effect = [
            ExternalServiceError("safety filter", service="image-generation"),
            png_bytes(),
        ]

        result = await handle_image_generation(pipeline, detail)

        episode = await pipeline.repos.episodes.get("story-1", 1)
        assert result["imageCount"] == 1
        assert episode.image_count == 1
        assert episode.image_status == GenerationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_panels_fails_images_but_not_the_episode(
        self, pipeline, transport, image_generator, preferences, insights, metric_data
    ):
        detail = await _completed_episode(pipeline, transport, preferences, insights)
        image_generator.generate_panel.side_effect = ExternalServiceError("down", service="image-generation")

        with pytest.raises(ExternalServiceError) as exc_info:
            await handle_image_generation(pipeline, detail)

        episode = await pipeline.repos.episodes.get("story-1", 1)
        assert exc_info.value.retryable is True
        assert episode.status == GenerationStatus.COMPLETED
        assert episode.image_status == GenerationStatus.FAILED
        assert "No panels" in episode.image_error_message
        assert episode.pdf_path is None
        assert "ImageGenerationFailure" in metric_names(metric_data)

    @pytest.mark.asyncio
    async def test_existing_pdf_is_not_regenerated(self, pipeline, transport, image_generator, preferences, insights):
        detail = await _completed_episode(pipeline, transport, preferences, insights)
        await handle_image_generation(pipeline, detail)

        result = await handle_image_generation(pipeline, detail)

        assert result["status"] == "skipped"
        assert image_generator.generate_panel.call_count == 2

    @pytest.mark.asyncio
    async def test_path_must_belong_to_the_user(self, pipeline, transport, image_generator, preferences, insights):
        detail = await _completed_episode(pipeline, transport, preferences, insights)
        forged = ImageGenerationRequested(
            user_id="someone-else",
            episode_id=detail.episode_id,
            episode_content_path=detail.episode_content_path,
        )

        with pytest.raises(ValidationError):
            await handle_image_generation(pipeline, forged)

        image_generator.generate_panel.assert_not_called()

    @pytest.mark.asyncio
    async def test_episode_id_must_match_path(self, pipeline, transport, preferences, insights):
        detail = await _completed_episode(pipeline, transport, preferences, insights)
        mismatched = detail.model_copy(update={"episode_id": "another-episode"})

        with pytest.raises(ValidationError, match="does not match"):
            await handle_image_generation(pipeline, mismatched)
