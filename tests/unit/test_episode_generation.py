"""Unit tests for the episode stage and story continuation."""

import pytest

from manga_pipeline.api.models.enums import ContinuationStatus, GenerationStatus
from manga_pipeline.api.services.continuation import request_continuation
from manga_pipeline.api.services.episode_generation import (
    generate_episode,
    handle_continue_episode,
    handle_episode_generation,
)
from manga_pipeline.api.services.events import (
    DetailType,
    EpisodeGenerationRequested,
    validate_event,
)
from manga_pipeline.api.services.status import evaluate_continuation
from manga_pipeline.core.errors import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

from .factories import EPISODE_TEXT, USER_ID, metric_names, seed_story


def _episode_event(story, episode_number=1):
    return EpisodeGenerationRequested(
        user_id=USER_ID,
        story_id=story.story_id,
        story_content_path=story.content_path,
        episode_number=episode_number,
    )


class TestEpisodeGeneration:
    """Tests for "Episode Generation Requested"."""

    @pytest.mark.asyncio
    async def test_writes_first_episode_and_requests_images(
        self, pipeline, transport, text_generator, preferences, insights, metric_data
    ):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)

        result = await handle_episode_generation(pipeline, _episode_event(story))

        episode = await pipeline.repos.episodes.get(story.story_id, 1)
        assert result["status"] == "completed"
        assert episode.status == GenerationStatus.COMPLETED
        assert episode.title == "Episode 1: Ashes"
        assert episode.image_status == GenerationStatus.PENDING
        assert episode.content_path == f"episodes/{USER_ID}/{story.story_id}/1/episode.md"
        assert "[Panel: Kaito stands" in await pipeline.content.get_text(episode.content_path)

        args = text_generator.generate_episode.call_args.args
        assert args[2] == 1
        assert args[3] is False

        image_event = transport.of_type(DetailType.IMAGE_GENERATION_REQUESTED)[0]
        assert image_event.detail["episodeId"] == episode.episode_id
        assert image_event.detail["episodeContentPath"] == episode.content_path
        assert "EpisodeGenerationSuccess" in metric_names(metric_data)

    @pytest.mark.asyncio
    async def test_completed_episode_is_not_rewritten(self, pipeline, transport, text_generator, preferences, insights):
        """Redelivery only republishes the image request."""
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        await handle_episode_generation(pipeline, _episode_event(story))

        result = await handle_episode_generation(pipeline, _episode_event(story))

        assert result["status"] == "skipped"
        assert text_generator.generate_episode.call_count == 1
        assert len(transport.of_type(DetailType.IMAGE_GENERATION_REQUESTED)) == 2

    @pytest.mark.asyncio
    async def test_story_must_be_completed(self, pipeline):
        story = await seed_story(pipeline, status=GenerationStatus.PROCESSING)

        with pytest.raises(ValidationError) as exc_info:
            await generate_episode(
                pipeline,
                user_id=USER_ID,
                story_id=story.story_id,
                story_content_path=f"stories/{USER_ID}/{story.story_id}/story.md",
                episode_number=1,
            )

        assert exc_info.value.code == "STORY_NOT_COMPLETED"
        assert await pipeline.repos.episodes.list_for_story(story.story_id) == []

    @pytest.mark.asyncio
    async def test_unknown_story(self, pipeline):
        with pytest.raises(NotFoundError):
            await generate_episode(
                pipeline,
                user_id=USER_ID,
                story_id="missing",
                story_content_path=f"stories/{USER_ID}/missing/story.md",
                episode_number=1,
            )

    @pytest.mark.asyncio
    async def test_missing_preferences_fail_the_episode(self, pipeline):
        story = await seed_story(pipeline)

        with pytest.raises(ValidationError) as exc_info:
            await handle_episode_generation(pipeline, _episode_event(story))

        episode = await pipeline.repos.episodes.get(story.story_id, 1)
        assert exc_info.value.code == "PREFERENCES_NOT_FOUND"
        assert episode.status == GenerationStatus.FAILED

    @pytest.mark.asyncio
    async def test_generator_failure_marks_episode_failed(
        self, pipeline, transport, text_generator, preferences, insights
    ):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        text_generator.generate_episode.side_effect = ExternalServiceError("model down", service="text-generation")

        with pytest.raises(ExternalServiceError):
            await handle_episode_generation(pipeline, _episode_event(story))

        episode = await pipeline.repos.episodes.get(story.story_id, 1)
        assert episode.status == GenerationStatus.FAILED
        assert episode.error_message == "model down"
        assert transport.of_type(DetailType.IMAGE_GENERATION_REQUESTED) == []

    @pytest.mark.asyncio
    async def test_failed_episode_can_be_retried(self, pipeline, text_generator, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        text_generator.generate_episode.side_effect = [ExternalServiceError("timeout", service="x"), "# Retry\n\nBody"]

        with pytest.raises(ExternalServiceError):
            await handle_episode_generation(pipeline, _episode_event(story))
        result = await handle_episode_generation(pipeline, _episode_event(story))

        episode = await pipeline.repos.episodes.get(story.story_id, 1)
        assert result["status"] == "completed"
        assert episode.status == GenerationStatus.COMPLETED
        assert episode.title == "Retry"

    @pytest.mark.asyncio
    async def test_episode_cancelled_while_writing_stays_cancelled(
        self, pipeline, transport, text_generator, preferences, insights
    ):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)

        async def cancel_then_write(*args):
            await pipeline.repos.episodes.transition(story.story_id, 1, GenerationStatus.CANCELLED)
            return EPISODE_TEXT

        text_generator.generate_episode.side_effect = cancel_then_write

        result = await handle_episode_generation(pipeline, _episode_event(story))

        episode = await pipeline.repos.episodes.get(story.story_id, 1)
        assert result["status"] == "cancelled"
        assert episode.status == GenerationStatus.CANCELLED
        assert episode.content_path is None
        assert transport.of_type(DetailType.IMAGE_GENERATION_REQUESTED) == []

    @pytest.mark.asyncio
    async def test_cancelled_episode_is_not_restarted(self, pipeline, transport, text_generator, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        text_generator.generate_episode.side_effect = ExternalServiceError("model down", service="text-generation")
        with pytest.raises(ExternalServiceError):
            await handle_episode_generation(pipeline, _episode_event(story))
        await pipeline.repos.episodes.transition(story.story_id, 1, GenerationStatus.CANCELLED)

        result = await handle_episode_generation(pipeline, _episode_event(story))

        assert result["status"] == "cancelled"
        assert text_generator.generate_episode.call_count == 1
        assert (await pipeline.repos.episodes.get(story.story_id, 1)).status == GenerationStatus.CANCELLED
        assert transport.of_type(DetailType.IMAGE_GENERATION_REQUESTED) == []


class TestContinuation:
    """Tests for requesting and generating a continuation episode."""

    @pytest.mark.asyncio
    async def test_processing_story_cannot_be_continued(self, pipeline, transport, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline, status=GenerationStatus.PROCESSING)

        with pytest.raises(ValidationError) as exc_info:
            await request_continuation(pipeline, USER_ID, story.story_id)

        assert exc_info.value.code == "STORY_NOT_COMPLETED"
        assert await pipeline.repos.continuations.list_for_story(story.story_id) == []
        assert transport.events == []

    @pytest.mark.asyncio
    async def test_preferences_required(self, pipeline):
        story = await seed_story(pipeline)

        with pytest.raises(ValidationError) as exc_info:
            await request_continuation(pipeline, USER_ID, story.story_id)

        assert exc_info.value.code == "PREFERENCES_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_other_users_story_is_not_found(self, pipeline, preferences, insights):
        await pipeline.repos.preferences.create("someone-else", preferences, insights)
        story = await seed_story(pipeline)

        with pytest.raises(NotFoundError) as exc_info:
            await request_continuation(pipeline, "someone-else", story.story_id)

        assert exc_info.value.code == "STORY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_second_request_while_in_flight_conflicts(self, pipeline, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        await request_continuation(pipeline, USER_ID, story.story_id)

        with pytest.raises(ConflictError) as exc_info:
            await request_continuation(pipeline, USER_ID, story.story_id)

        assert exc_info.value.code == "CONTINUATION_IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_publish_failure_marks_records_failed(self, pipeline, transport, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        transport.fail_with = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            await request_continuation(pipeline, USER_ID, story.story_id)

        continuations = await pipeline.repos.continuations.list_for_story(story.story_id)
        request = await pipeline.repos.requests.get(USER_ID, continuations[0].request_id)
        assert continuations[0].status == ContinuationStatus.FAILED
        assert request.status == GenerationStatus.FAILED

    @pytest.mark.asyncio
    async def test_continuation_generates_next_episode(
        self, pipeline, transport, text_generator, preferences, insights, metric_data
    ):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        await handle_episode_generation(pipeline, _episode_event(story))

        accepted = await request_continuation(pipeline, USER_ID, story.story_id)
        event = transport.of_type(DetailType.CONTINUE_EPISODE_REQUESTED)[0]
        result = await handle_continue_episode(pipeline, validate_event(event))

        assert accepted["episodeNumber"] == 2
        assert accepted["status"] == "GENERATING"
        assert result["episodeId"] == accepted["episodeId"]

        episode = await pipeline.repos.episodes.get(story.story_id, 2)
        assert episode.status == GenerationStatus.COMPLETED
        assert episode.is_continue_episode is True
        assert text_generator.generate_episode.call_args.args[3] is True

        request = await pipeline.repos.requests.get(USER_ID, accepted["requestId"])
        continuation = await pipeline.repos.continuations.get(story.story_id, accepted["continuationId"])
        assert request.status == GenerationStatus.COMPLETED
        assert continuation.status == ContinuationStatus.COMPLETED

        statuses = [e.detail["status"] for e in transport.of_type(DetailType.EPISODE_CONTINUATION_STATUS_UPDATED)]
        assert statuses == ["GENERATING", "COMPLETED"]
        assert "ContinueEpisodeRequested" in metric_names(metric_data)

    @pytest.mark.asyncio
    async def test_continuation_failure_fails_every_record(self, pipeline, transport, text_generator, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        accepted = await request_continuation(pipeline, USER_ID, story.story_id)
        text_generator.generate_episode.side_effect = ExternalServiceError("model down", service="text-generation")
        event = transport.of_type(DetailType.CONTINUE_EPISODE_REQUESTED)[0]

        with pytest.raises(ExternalServiceError):
            await handle_continue_episode(pipeline, validate_event(event))

        request = await pipeline.repos.requests.get(USER_ID, accepted["requestId"])
        continuation = await pipeline.repos.continuations.get(story.story_id, accepted["continuationId"])
        episode = await pipeline.repos.episodes.get(story.story_id, 1)
        assert request.status == GenerationStatus.FAILED
        assert continuation.status == ContinuationStatus.FAILED
        assert continuation.error_message == "model down"
        assert episode.status == GenerationStatus.FAILED

    @pytest.mark.asyncio
    async def test_continuation_number_must_be_next(self, pipeline, transport, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        await request_continuation(pipeline, USER_ID, story.story_id)
        detail = validate_event(transport.of_type(DetailType.CONTINUE_EPISODE_REQUESTED)[0])
        skipped_ahead = detail.model_copy(update={"next_episode_number": 5})

        with pytest.raises(ValidationError, match="next episode is 1"):
            await handle_continue_episode(pipeline, skipped_ahead)

    @pytest.mark.asyncio
    async def test_rejected_continuation_is_recorded_failed(self, pipeline, transport, preferences, insights):
        """A continuation rejected before generation does not block the next request."""
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        accepted = await request_continuation(pipeline, USER_ID, story.story_id)
        detail = validate_event(transport.of_type(DetailType.CONTINUE_EPISODE_REQUESTED)[0])

        with pytest.raises(ValidationError):
            await handle_continue_episode(pipeline, detail.model_copy(update={"next_episode_number": 5}))

        continuation = await pipeline.repos.continuations.get(story.story_id, accepted["continuationId"])
        request = await pipeline.repos.requests.get(USER_ID, accepted["requestId"])
        assert continuation.status == ContinuationStatus.FAILED
        assert "next episode is 1" in continuation.error_message
        assert request.status == GenerationStatus.FAILED

        eligibility = await evaluate_continuation(pipeline, await pipeline.repos.stories.get(USER_ID, story.story_id))
        assert eligibility.can_continue is True
        assert (await request_continuation(pipeline, USER_ID, story.story_id))["episodeNumber"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_request_stops_the_continuation(
        self, pipeline, transport, text_generator, preferences, insights
    ):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        story = await seed_story(pipeline)
        accepted = await request_continuation(pipeline, USER_ID, story.story_id)
        await pipeline.repos.requests.transition(USER_ID, accepted["requestId"], GenerationStatus.CANCELLED)
        event = transport.of_type(DetailType.CONTINUE_EPISODE_REQUESTED)[0]

        result = await handle_continue_episode(pipeline, validate_event(event))

        continuation = await pipeline.repos.continuations.get(story.story_id, accepted["continuationId"])
        request = await pipeline.repos.requests.get(USER_ID, accepted["requestId"])
        episode = await pipeline.repos.episodes.get(story.story_id, 1)
        assert result["status"] == "cancelled"
        assert request.status == GenerationStatus.CANCELLED
        assert continuation.status == ContinuationStatus.FAILED
        assert episode.status == GenerationStatus.CANCELLED
        text_generator.generate_episode.assert_not_called()
        assert transport.of_type(DetailType.IMAGE_GENERATION_REQUESTED) == []
