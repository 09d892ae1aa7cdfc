"""
DSPy Modules for writing manga stories and episodes.

Both modules are synchronous and return raw markdown. Titles are parsed
from the text afterwards (see content_parsing.py).
"""

import dspy

from ..signatures.manga_episode import MangaEpisodeSignature
from ..signatures.manga_story import MangaStorySignature
from ..types import QlooInsights, UserPreferencesData

CONTINUATION_NOTES = (
    "This story has already finished its planned arc. Open a new chapter: "
    "pick up the strongest unresolved thread and raise new stakes."
)


class StoryWriter(dspy.Module):
    """Write a complete story from a taste profile and cultural insights."""

    def __init__(self):
        super().__init__()
        self.generate = dspy.ChainOfThought(MangaStorySignature)

    def forward(self, preferences: UserPreferencesData, insights: QlooInsights) -> str:
        result = self.generate(
            preferences=preferences.describe(),
            insights=insights.describe(),
        )
        return (result.story or "").strip()


class EpisodeWriter(dspy.Module):
    """
    Write one episode of an existing story.

    Args:
        story: Full story markdown
        preferences: The reader's taste profile
        episode_number: Number of the episode being written
        is_continuation: True when extending an already finished story
    """

    def __init__(self):
        super().__init__()
        self.generate = dspy.ChainOfThought(MangaEpisodeSignature)

    def forward(
        self,
        story: str,
        preferences: UserPreferencesData,
        episode_number: int,
        is_continuation: bool = False,
    ) -> str:
        result = self.generate(
            story=story,
            preferences=preferences.describe(),
            episode_number=episode_number,
            continuation_notes=CONTINUATION_NOTES if is_continuation else "None",
        )
        return (result.episode or "").strip()
