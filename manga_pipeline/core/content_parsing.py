"""Title and scene extraction from generated markdown."""

import re

from .types import ParsedContent

DEFAULT_STORY_TITLE = "Untitled Story"

# Only the head of the document is searched for a title
TITLE_SEARCH_LINES = 10

_HEADING = re.compile(r"^#\s+(.+)$")
_TITLE_LINE = re.compile(r"^title:\s*(.+)$", re.IGNORECASE)
_BOLD_LINE = re.compile(r"^\*\*(.+?)\*\*$")
_EPISODE_LINE = re.compile(r"^Episode\s+\d+:\s*(.+)$", re.IGNORECASE)

_SCENE_BREAKS = (
    re.compile(r"\[Scene Break\]", re.IGNORECASE),
    re.compile(r"\[New Scene\]", re.IGNORECASE),
    re.compile(r"^-{3,}$"),
    re.compile(r"^\*{3,}$"),
)
_BRACKETED = re.compile(r"\[([^\]]+)\]|\(([^)]+)\)")


def _find_title(lines: list[str]) -> tuple[int, str] | None:
    """Locate the title line: heading first line, then Title:, then a bold line."""
    head = [(i, line.strip()) for i, line in enumerate(lines[:TITLE_SEARCH_LINES])]
    non_blank = [(i, line) for i, line in head if line]
    if not non_blank:
        return None

    first_index, first_line = non_blank[0]
    match = _HEADING.match(first_line)
    if match:
        return first_index, match.group(1).strip()

    for i, line in non_blank:
        match = _TITLE_LINE.match(line)
        if match:
            return i, match.group(1).strip()

    for i, line in non_blank:
        match = _BOLD_LINE.match(line)
        if match:
            return i, match.group(1).strip()

    return None


def _body_after(lines: list[str], index: int | None) -> str:
    """Everything after the title line; lines before it are dropped."""
    remaining = lines[index + 1:] if index is not None else list(lines)
    while remaining and not remaining[0].strip():
        remaining.pop(0)
    return "\n".join(remaining).strip()


def parse_story_content(content: str) -> ParsedContent:
    """Split generated story text into title and body."""
    lines = content.splitlines()
    found = _find_title(lines)
    if found is None:
        return ParsedContent(title=DEFAULT_STORY_TITLE, body=_body_after(lines, None))

    index, title = found
    return ParsedContent(title=title or DEFAULT_STORY_TITLE, body=_body_after(lines, index))


def parse_episode_content(content: str, episode_number: int) -> ParsedContent:
    """Split generated episode text into title and body.

    Recognizes a markdown heading, an ``Episode N: name`` line (normalized to
    this episode's number), a ``Title:`` line and a bold line, in that order.
    Defaults to ``Episode N``.
    """
    lines = content.splitlines()
    head = [(i, line.strip()) for i, line in enumerate(lines[:TITLE_SEARCH_LINES]) if line.strip()]

    for i, line in head[:1]:
        match = _HEADING.match(line)
        if match:
            return ParsedContent(title=match.group(1).strip(), body=_body_after(lines, i))

    for i, line in head:
        match = _EPISODE_LINE.match(line)
        if match:
            title = f"Episode {episode_number}: {match.group(1).strip()}"
            return ParsedContent(title=title, body=_body_after(lines, i))

    for pattern in (_TITLE_LINE, _BOLD_LINE):
        for i, line in head:
            match = pattern.match(line)
            if match:
                return ParsedContent(title=match.group(1).strip(), body=_body_after(lines, i))

    return ParsedContent(title=f"Episode {episode_number}", body=_body_after(lines, None))


def _strip_front_matter(content: str) -> str:
    if content.startswith("---"):
        end = content.find("---", 3)
        if end != -1:
            return content[end + 3:].strip()
    return content


def extract_visual_description(scene: str, max_length: int = 500) -> str:
    """Prefer bracketed stage directions; fall back to the scene text itself."""
    directions = [a or b for a, b in _BRACKETED.findall(scene)]
    directions = [d.strip() for d in directions if d.strip()]
    text = "; ".join(directions) if directions else " ".join(scene.split())
    return text[:max_length]


def split_scenes(content: str, max_scenes: int = 8) -> list[str]:
    """Split episode text into scene descriptions for panel generation.

    Explicit scene breaks win. Without any, paragraphs are grouped three at a
    time. At most ``max_scenes`` scenes are returned.
    """
    body = _strip_front_matter(content)
    paragraphs = [p.strip() for p in body.split("\n\n") if p.strip()]

    scenes: list[str] = []
    current: list[str] = []
    saw_break = False
    for paragraph in paragraphs:
        if any(pattern.search(paragraph) for pattern in _SCENE_BREAKS):
            saw_break = True
            if current:
                scenes.append(extract_visual_description("\n\n".join(current)))
            current = []
            continue
        current.append(paragraph)
    if current and saw_break:
        scenes.append(extract_visual_description("\n\n".join(current)))

    if not saw_break:
        for i in range(0, len(paragraphs), 3):
            scenes.append(extract_visual_description("\n\n".join(paragraphs[i:i + 3])))

    return scenes[:max_scenes]
