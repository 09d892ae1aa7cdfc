"""Content store for generated stories, episodes, panels and PDFs.

Objects are addressed by deterministic paths (see the *_path helpers). The
local implementation keeps them on disk under CONTENT_DIR with a JSON
sidecar per object for content type and metadata. File I/O runs in a
worker thread so handlers never block the event loop.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ...core.errors import NotFoundError, ValidationError
from ...core.types import utc_timestamp

METADATA_SUFFIX = ".meta.json"


def story_path(user_id: str, story_id: str) -> str:
    return f"stories/{user_id}/{story_id}/story.md"


def episode_path(user_id: str, story_id: str, episode_number: int) -> str:
    return f"episodes/{user_id}/{story_id}/{episode_number}/episode.md"


def episode_pdf_path(user_id: str, story_id: str, episode_number: int) -> str:
    return f"episodes/{user_id}/{story_id}/{episode_number}/episode.pdf"


def image_path(user_id: str, story_id: str, episode_number: int, index: int, filename: str) -> str:
    return f"images/{user_id}/{story_id}/{episode_number}/generated/{index:03d}-{filename}"


def parse_episode_path(path: str) -> tuple[str, str, int]:
    """Return (user_id, story_id, episode_number) from an episode content path."""
    parts = path.split("/")
    if len(parts) != 5 or parts[0] != "episodes" or parts[4] != "episode.md":
        raise ValidationError(f"Invalid episode content path: {path}")
    _, user_id, story_id, number, _ = parts
    try:
        episode_number = int(number)
    except ValueError:
        raise ValidationError(f"Invalid episode content path: {path}")
    if not user_id or not story_id or episode_number < 1:
        raise ValidationError(f"Invalid episode content path: {path}")
    return user_id, story_id, episode_number


class ContentStore(ABC):
    """Opaque object store keyed by path."""

    @abstractmethod
    async def put(
        self,
        path: str,
        data: bytes | str,
        content_type: str = "text/markdown",
        metadata: Optional[dict[str, str]] = None,
    ) -> str:
        """Store an object and return its path."""

    @abstractmethod
    async def get(self, path: str) -> bytes:
        """Fetch an object. Raises NotFoundError when absent."""

    async def get_text(self, path: str) -> str:
        return (await self.get(path)).decode("utf-8")

    @abstractmethod
    async def exists(self, path: str) -> bool: ...

    @abstractmethod
    async def list(self, prefix: str) -> list[str]:
        """Paths under ``prefix``, sorted."""

    @abstractmethod
    async def delete(self, path: str) -> None: ...


class LocalContentStore(ContentStore):
    """Filesystem-backed content store."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        if not path or path.startswith("/") or ".." in Path(path).parts:
            raise ValidationError(f"Invalid content path: {path}")
        return self.root / path

    async def put(self, path, data, content_type="text/markdown", metadata=None):
        target = self._resolve(path)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        sidecar = {
            "contentType": content_type,
            "metadata": metadata or {},
            "size": len(payload),
            "storedAt": utc_timestamp(),
        }

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)
            target.with_name(target.name + METADATA_SUFFIX).write_text(json.dumps(sidecar))

        await asyncio.to_thread(_write)
        return path

    async def get(self, path):
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError:
            raise NotFoundError(f"Content not found: {path}", code="CONTENT_NOT_FOUND")

    async def get_metadata(self, path: str) -> dict:
        target = self._resolve(path)
        sidecar = target.with_name(target.name + METADATA_SUFFIX)
        try:
            raw = await asyncio.to_thread(sidecar.read_text)
        except FileNotFoundError:
            raise NotFoundError(f"Content not found: {path}", code="CONTENT_NOT_FOUND")
        return json.loads(raw)

    async def exists(self, path):
        return await asyncio.to_thread(self._resolve(path).is_file)

    async def list(self, prefix):
        def _walk() -> list[str]:
            if not self.root.exists():
                return []
            paths = []
            for file in self.root.rglob("*"):
                if not file.is_file() or file.name.endswith(METADATA_SUFFIX):
                    continue
                relative = file.relative_to(self.root).as_posix()
                if relative.startswith(prefix):
                    paths.append(relative)
            return sorted(paths)

        return await asyncio.to_thread(_walk)

    async def delete(self, path):
        target = self._resolve(path)

        def _remove() -> None:
            target.unlink(missing_ok=True)
            target.with_name(target.name + METADATA_SUFFIX).unlink(missing_ok=True)

        await asyncio.to_thread(_remove)
