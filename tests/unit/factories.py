"""Test data and fakes shared by the unit tests."""

import asyncio
from io import BytesIO

from PIL import Image

from manga_pipeline.api.database.repository import StoryUpdate
from manga_pipeline.api.models.entities import Story
from manga_pipeline.api.models.enums import GenerationStatus
from manga_pipeline.api.services.content_store import story_path
from manga_pipeline.api.services.events import EventTransport
from manga_pipeline.core.types import utc_timestamp

USER_ID = "user-123"

STORY_TEXT = """# The Last Ronin

Kaito wanders the ruined capital.

He meets a girl who can hear machines."""

EPISODE_TEXT = """# Episode 1: Ashes

[Panel: Kaito stands on a broken bridge at dusk]
The wind carries smoke.

---

[Panel: a small hand pulls at his sleeve]
"Are you the swordsman?"
"""


class RecordingTransport(EventTransport):
    """Collects published events instead of enqueueing them."""

    def __init__(self):
        self.events = []
        self.fail_with = None

    async def send(self, event):
        if self.fail_with is not None:
            raise self.fail_with
        self.events.append(event)

    def of_type(self, detail_type):
        return [event for event in self.events if event.detail_type == detail_type]


def png_bytes(color=(200, 30, 30)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (8, 8), color).save(buffer, format="PNG")
    return buffer.getvalue()


def run(coro):
    """Run a coroutine from a synchronous test."""
    return asyncio.run(coro)


def metric_names(metric_data):
    return [datum.name for datum in metric_data]


async def seed_story(pipeline, story_id="story-1", status=GenerationStatus.COMPLETED, user_id=USER_ID):
    """Store a story (and its text when COMPLETED) directly."""
    story = Story(
        story_id=story_id,
        user_id=user_id,
        title="The Last Ronin",
        status=GenerationStatus.PROCESSING,
        created_at=utc_timestamp(),
    )
    await pipeline.repos.stories.create(story)
    update = None
    if status == GenerationStatus.COMPLETED:
        path = story_path(user_id, story_id)
        await pipeline.content.put(path, STORY_TEXT)
        update = StoryUpdate(content_path=path)
    if status != GenerationStatus.PROCESSING or update:
        await pipeline.repos.stories.transition(user_id, story_id, status, update)
    return await pipeline.repos.stories.get(user_id, story_id)
