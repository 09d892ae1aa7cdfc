"""
DSPy Signature for writing one episode of an existing manga story.
"""

import dspy


class MangaEpisodeSignature(dspy.Signature):
    """
    Write the next episode of a manga story as a sequence of panels.

    Stay consistent with the characters, setting and tone of the story.
    Each scene is separated by a line containing only '---' and opens with
    a bracketed visual description of what the panel shows.

    OUTPUT FORMAT:
    # Episode [N]: [Episode title]

    [Panel: what to draw]
    Dialogue and narration.

    ---

    [Panel: what to draw]
    ...
    """

    story: str = dspy.InputField(desc="The full story this episode belongs to")
    preferences: str = dspy.InputField(desc="The reader's taste profile")
    episode_number: int = dspy.InputField(desc="Number of the episode to write")
    continuation_notes: str = dspy.InputField(
        desc="Guidance when continuing a finished story, or 'None'"
    )

    episode: str = dspy.OutputField(
        desc="Episode script in markdown, at most 8 scenes separated by '---'."
    )
