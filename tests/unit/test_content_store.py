"""Unit tests for the local content store and content paths."""

import pytest

from manga_pipeline.api.services.content_store import (
    LocalContentStore,
    episode_path,
    episode_pdf_path,
    image_path,
    parse_episode_path,
    story_path,
)
from manga_pipeline.core.errors import NotFoundError, ValidationError


class TestContentPaths:
    """Tests for the deterministic path helpers."""

    def test_layout(self):
        assert story_path("u1", "s1") == "stories/u1/s1/story.md"
        assert episode_path("u1", "s1", 2) == "episodes/u1/s1/2/episode.md"
        assert episode_pdf_path("u1", "s1", 2) == "episodes/u1/s1/2/episode.pdf"
        assert image_path("u1", "s1", 2, 3, "panel.png") == "images/u1/s1/2/generated/003-panel.png"

    def test_parse_episode_path(self):
        assert parse_episode_path("episodes/u1/s1/12/episode.md") == ("u1", "s1", 12)

    @pytest.mark.parametrize(
        "path",
        [
            "stories/u1/s1/story.md",
            "episodes/u1/s1/x/episode.md",
            "episodes/u1/s1/0/episode.md",
            "episodes/u1/s1/1/other.md",
        ],
    )
    def test_parse_episode_path_rejects_other_paths(self, path):
        with pytest.raises(ValidationError):
            parse_episode_path(path)


class TestLocalContentStore:
    """Tests for LocalContentStore."""

    @pytest.mark.asyncio
    async def test_put_and_get_text(self, tmp_path):
        store = LocalContentStore(tmp_path)

        path = await store.put("stories/u1/s1/story.md", "# Title\n\nBody", metadata={"title": "Title"})

        assert path == "stories/u1/s1/story.md"
        assert await store.get_text(path) == "# Title\n\nBody"
        assert await store.exists(path) is True

    @pytest.mark.asyncio
    async def test_metadata_sidecar(self, tmp_path):
        store = LocalContentStore(tmp_path)
        await store.put("images/u1/s1/1/generated/001-panel.png", b"\x89PNG", content_type="image/png")

        metadata = await store.get_metadata("images/u1/s1/1/generated/001-panel.png")

        assert metadata["contentType"] == "image/png"
        assert metadata["size"] == 4

    @pytest.mark.asyncio
    async def test_missing_object_raises_not_found(self, tmp_path):
        store = LocalContentStore(tmp_path)

        with pytest.raises(NotFoundError) as exc_info:
            await store.get("stories/u1/missing/story.md")

        assert exc_info.value.code == "CONTENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_list_skips_sidecars_and_sorts(self, tmp_path):
        store = LocalContentStore(tmp_path)
        await store.put("images/u1/s1/1/generated/002-panel.png", b"b")
        await store.put("images/u1/s1/1/generated/001-panel.png", b"a")
        await store.put("stories/u1/s1/story.md", "text")

        paths = await store.list("images/u1/s1/1/")

        assert paths == [
            "images/u1/s1/1/generated/001-panel.png",
            "images/u1/s1/1/generated/002-panel.png",
        ]

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = LocalContentStore(tmp_path)
        await store.put("stories/u1/s1/story.md", "text")

        await store.delete("stories/u1/s1/story.md")

        assert await store.exists("stories/u1/s1/story.md") is False
        assert await store.list("stories/") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/etc/passwd", "stories/../../secret", ""])
    async def test_rejects_paths_outside_root(self, tmp_path, path):
        store = LocalContentStore(tmp_path)
        with pytest.raises(ValidationError):
            await store.put(path, "x")
