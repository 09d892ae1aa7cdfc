"""Unit tests for single and batch story generation."""

import pytest

from manga_pipeline.api.models.entities import BatchWorkflow, GenerationRequest
from manga_pipeline.api.models.enums import GenerationStatus, RequestType, WorkflowStatus
from manga_pipeline.api.services.events import (
    BatchStoryGenerationRequested,
    DetailType,
    StoryGenerationRequested,
    validate_event,
)
from manga_pipeline.api.services.story_generation import (
    batch_event_id,
    batch_request_id,
    generate_story,
    handle_batch_story_generation,
    handle_story_generation,
)
from manga_pipeline.api.services.workflow_service import start_workflow
from manga_pipeline.core.errors import ExternalServiceError
from manga_pipeline.core.types import utc_timestamp

from .factories import STORY_TEXT, USER_ID, metric_names


async def drive_batches(pipeline, transport):
    """Deliver every published batch event to the handler until the chain stops."""
    results = []
    delivered = 0
    while True:
        pending = transport.of_type(DetailType.BATCH_STORY_GENERATION_REQUESTED)[delivered:]
        if not pending:
            return results
        for event in pending:
            delivered += 1
            results.append(await handle_batch_story_generation(pipeline, validate_event(event)))


class TestBatchIds:
    """Tests for deterministic batch ids."""

    def test_batch_request_id_replaces_existing_suffix(self):
        assert batch_request_id("req-1", 2) == "req-1-batch-2"
        assert batch_request_id("req-1-batch-2", 3) == "req-1-batch-3"

    def test_batch_event_id(self):
        assert batch_event_id("wf-1", 4) == "wf-1-batch-4"


class TestGenerateStory:
    """Tests for the single-story stage."""

    @pytest.mark.asyncio
    async def test_generates_stores_and_announces(self, pipeline, transport, preferences, insights, metric_data):
        story = await generate_story(
            pipeline, user_id=USER_ID, request_id="r1", preferences=preferences, insights=insights
        )

        assert story.status == GenerationStatus.COMPLETED
        assert story.title == "The Last Ronin"
        assert story.content_path == f"stories/{USER_ID}/{story.story_id}/story.md"
        assert (await pipeline.content.get_text(story.content_path)).startswith("Kaito wanders")

        request = await pipeline.repos.requests.get(USER_ID, "r1")
        assert request.status == GenerationStatus.COMPLETED
        assert request.related_entity_id == story.story_id

        episode_event = transport.of_type(DetailType.EPISODE_GENERATION_REQUESTED)[0]
        assert episode_event.detail["episodeNumber"] == 1
        assert episode_event.detail["storyContentPath"] == story.content_path
        assert "StoryGenerationSuccess" in metric_names(metric_data)

    @pytest.mark.asyncio
    async def test_failure_marks_story_and_request_failed(
        self, pipeline, transport, text_generator, preferences, insights, metric_data
    ):
        text_generator.generate_story.side_effect = ExternalServiceError("model down", service="text-generation")

        with pytest.raises(ExternalServiceError):
            await generate_story(pipeline, user_id=USER_ID, request_id="r1", preferences=preferences, insights=insights)

        request = await pipeline.repos.requests.get(USER_ID, "r1")
        stories = await pipeline.repos.stories.list_for_user(USER_ID)
        assert request.status == GenerationStatus.FAILED
        assert request.error_message == "model down"
        assert [s.status for s in stories] == [GenerationStatus.FAILED]
        assert transport.of_type(DetailType.EPISODE_GENERATION_REQUESTED) == []
        status_event = transport.of_type(DetailType.GENERATION_STATUS_UPDATED)[-1]
        assert status_event.detail["status"] == "FAILED"
        assert "StoryGenerationFailure" in metric_names(metric_data)

    @pytest.mark.asyncio
    async def test_finished_request_is_not_regenerated(self, pipeline, text_generator, preferences, insights):
        """A redelivered event for a completed request does nothing."""
        await pipeline.repos.requests.create(
            GenerationRequest(
                request_id="r1",
                user_id=USER_ID,
                type=RequestType.STORY,
                status=GenerationStatus.COMPLETED,
                created_at=utc_timestamp(),
            )
        )

        result = await handle_story_generation(
            pipeline,
            StoryGenerationRequested(user_id=USER_ID, request_id="r1", preferences=preferences, insights=insights),
        )

        assert result["status"] == "skipped"
        text_generator.generate_story.assert_not_called()

    @pytest.mark.asyncio
    async def test_redelivered_completed_request_requests_episode_again(
        self, pipeline, transport, text_generator, preferences, insights
    ):
        detail = StoryGenerationRequested(user_id=USER_ID, request_id="r1", preferences=preferences, insights=insights)
        first = await handle_story_generation(pipeline, detail)

        second = await handle_story_generation(pipeline, detail)

        episode_events = transport.of_type(DetailType.EPISODE_GENERATION_REQUESTED)
        assert second["status"] == "skipped"
        assert text_generator.generate_story.call_count == 1
        assert [e.detail["storyId"] for e in episode_events] == [first["storyId"], first["storyId"]]

    @pytest.mark.asyncio
    async def test_story_cancelled_while_writing_stays_cancelled(
        self, pipeline, transport, text_generator, preferences, insights
    ):
        async def cancel_then_write(*args):
            [story] = await pipeline.repos.stories.list_for_user(USER_ID)
            await pipeline.repos.stories.transition(USER_ID, story.story_id, GenerationStatus.CANCELLED)
            return STORY_TEXT

        text_generator.generate_story.side_effect = cancel_then_write

        result = await generate_story(
            pipeline, user_id=USER_ID, request_id="r1", preferences=preferences, insights=insights
        )

        [story] = await pipeline.repos.stories.list_for_user(USER_ID)
        assert result is None
        assert story.status == GenerationStatus.CANCELLED
        assert await pipeline.repos.stories.list_by_status(GenerationStatus.COMPLETED) == []
        assert (await pipeline.repos.requests.get(USER_ID, "r1")).status == GenerationStatus.CANCELLED
        assert transport.of_type(DetailType.EPISODE_GENERATION_REQUESTED) == []

    @pytest.mark.asyncio
    async def test_request_cancelled_while_writing_requests_no_episode(
        self, pipeline, transport, text_generator, preferences, insights
    ):
        async def cancel_request_then_write(*args):
            await pipeline.repos.requests.transition(USER_ID, "r1", GenerationStatus.CANCELLED)
            return STORY_TEXT

        text_generator.generate_story.side_effect = cancel_request_then_write

        result = await generate_story(
            pipeline, user_id=USER_ID, request_id="r1", preferences=preferences, insights=insights
        )

        assert result is None
        assert (await pipeline.repos.requests.get(USER_ID, "r1")).status == GenerationStatus.CANCELLED
        assert transport.of_type(DetailType.EPISODE_GENERATION_REQUESTED) == []

    @pytest.mark.asyncio
    async def test_failure_does_not_overwrite_cancelled_story(
        self, pipeline, text_generator, preferences, insights
    ):
        async def cancel_then_fail(*args):
            [story] = await pipeline.repos.stories.list_for_user(USER_ID)
            await pipeline.repos.stories.transition(USER_ID, story.story_id, GenerationStatus.CANCELLED)
            raise ExternalServiceError("model down", service="text-generation")

        text_generator.generate_story.side_effect = cancel_then_fail

        with pytest.raises(ExternalServiceError):
            await generate_story(pipeline, user_id=USER_ID, request_id="r1", preferences=preferences, insights=insights)

        [story] = await pipeline.repos.stories.list_for_user(USER_ID)
        assert story.status == GenerationStatus.CANCELLED


class TestBatchStoryGeneration:
    """Tests for the self-chaining batch workflow."""

    @pytest.mark.asyncio
    async def test_failed_item_does_not_stop_the_chain(
        self, pipeline, transport, text_generator, preferences, insights
    ):
        """N=3 with story 2 failing: batch 3 still runs and the workflow completes."""
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        text_generator.generate_story.side_effect = [
            STORY_TEXT,
            ExternalServiceError("model down", service="text-generation"),
            STORY_TEXT,
        ]
        started = await start_workflow(pipeline, USER_ID, 3)
        workflow_id = started["workflowId"]

        results = await drive_batches(pipeline, transport)

        assert [r["status"] for r in results] == ["completed", "failed", "completed"]
        batch_events = transport.of_type(DetailType.BATCH_STORY_GENERATION_REQUESTED)
        assert [e.id for e in batch_events] == [batch_event_id(workflow_id, n) for n in (1, 2, 3)]

        workflow = await pipeline.repos.workflows.get(USER_ID, workflow_id)
        assert workflow.status == WorkflowStatus.COMPLETED
        assert (workflow.completed_stories, workflow.failed_stories) == (2, 1)

        second = await pipeline.repos.requests.get(USER_ID, batch_request_id(started["requestId"], 2))
        assert second.status == GenerationStatus.FAILED
        assert second.workflow_id == workflow_id

        announced = transport.of_type(DetailType.BATCH_WORKFLOW_STATUS_UPDATED)
        assert announced[-1].detail["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_failed_final_item_fails_the_workflow(
        self, pipeline, transport, text_generator, preferences, insights, metric_data
    ):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        text_generator.generate_story.side_effect = [
            STORY_TEXT,
            STORY_TEXT,
            ExternalServiceError("model down", service="text-generation"),
        ]
        started = await start_workflow(pipeline, USER_ID, 3)

        await drive_batches(pipeline, transport)

        workflow = await pipeline.repos.workflows.get(USER_ID, started["workflowId"])
        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.finished_stories == 3
        assert "BatchWorkflowFailed" in metric_names(metric_data)

    @pytest.mark.asyncio
    async def test_redelivered_item_is_counted_once(self, pipeline, transport, text_generator, preferences, insights):
        await pipeline.repos.preferences.create(USER_ID, preferences, insights)
        started = await start_workflow(pipeline, USER_ID, 2)
        first = validate_event(transport.of_type(DetailType.BATCH_STORY_GENERATION_REQUESTED)[0])

        await handle_batch_story_generation(pipeline, first)
        await handle_batch_story_generation(pipeline, first)

        workflow = await pipeline.repos.workflows.get(USER_ID, started["workflowId"])
        assert workflow.completed_stories == 1
        assert text_generator.generate_story.call_count == 1

    @pytest.mark.asyncio
    async def test_missing_preferences_fail_the_remaining_items(self, pipeline, transport, text_generator):
        detail = BatchStoryGenerationRequested(
            user_id=USER_ID,
            workflow_id="wf-1",
            request_id="req-1",
            number_of_stories=2,
            current_batch=1,
            total_batches=2,
        )

        result = await handle_batch_story_generation(pipeline, detail)

        workflow = await pipeline.repos.workflows.get(USER_ID, "wf-1")
        assert result["status"] == "failed"
        assert workflow.status == WorkflowStatus.FAILED
        assert workflow.failed_stories == 2
        assert (await pipeline.repos.requests.get(USER_ID, "req-1")).status == GenerationStatus.FAILED
        text_generator.generate_story.assert_not_called()

    @pytest.mark.asyncio
    async def test_terminal_workflow_is_skipped(self, pipeline, text_generator, preferences, insights):
        await pipeline.repos.workflows.create(
            BatchWorkflow(
                workflow_id="wf-1",
                user_id=USER_ID,
                request_id="req-1",
                number_of_stories=2,
                status=WorkflowStatus.STARTED,
                created_at=utc_timestamp(),
            )
        )
        await pipeline.repos.workflows.transition(USER_ID, "wf-1", WorkflowStatus.CANCELLED)
        detail = BatchStoryGenerationRequested(
            user_id=USER_ID,
            workflow_id="wf-1",
            request_id="req-1",
            number_of_stories=2,
            current_batch=1,
            total_batches=2,
            preferences=preferences,
            insights=insights,
        )

        result = await handle_batch_story_generation(pipeline, detail)

        assert result["status"] == "skipped"
        text_generator.generate_story.assert_not_called()
