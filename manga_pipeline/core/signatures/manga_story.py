"""
DSPy Signature for writing a manga story from a user's taste profile.
"""

import dspy


class MangaStorySignature(dspy.Signature):
    """
    Write an original manga story tailored to a reader's taste profile.

    Use the cultural insights to lean into what is currently resonating
    with readers of the chosen genres, without copying existing works.

    STRUCTURE:
    - A premise with a clear protagonist and a concrete want
    - Three acts: setup, escalating conflict, a turning point
    - End on an open thread so the story can continue in episodes

    OUTPUT FORMAT:
    # [Story title]

    [Story text in markdown, 800-1500 words]
    """

    preferences: str = dspy.InputField(
        desc="Genres, themes, art style, target audience and content rating"
    )
    insights: str = dspy.InputField(
        desc="Recommendations and trends for these preferences"
    )

    story: str = dspy.OutputField(
        desc="Complete story in markdown. First line is '# ' followed by the title."
    )
