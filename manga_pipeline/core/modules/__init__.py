from .story_writer import StoryWriter, EpisodeWriter
from .panel_illustrator import PanelIllustrator, assemble_episode_pdf

__all__ = [
    "StoryWriter",
    "EpisodeWriter",
    "PanelIllustrator",
    "assemble_episode_pdf",
]
