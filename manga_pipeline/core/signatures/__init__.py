from .manga_story import MangaStorySignature
from .manga_episode import MangaEpisodeSignature

__all__ = [
    "MangaStorySignature",
    "MangaEpisodeSignature",
]
