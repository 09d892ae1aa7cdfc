"""
Module for generating manga panels and assembling an episode PDF.

Panels are generated one scene at a time with Gemini image generation;
the PDF is a simple one-panel-per-page document built with Pillow.
"""

from io import BytesIO
from typing import Optional

from PIL import Image

from ...config import IMAGE_CONSTANTS, extract_image_from_response, get_image_client, get_image_config, get_image_model


class PanelIllustrator:
    """
    Generate a manga panel for one scene of an episode.

    The google-genai client is created on first use so the worker can start
    without image credentials when no image events arrive.
    """

    def __init__(self, client=None, model: Optional[str] = None, config=None):
        self._client = client
        self.model = model or get_image_model()
        self.config = config or get_image_config()

    @property
    def client(self):
        if self._client is None:
            self._client = get_image_client()
        return self._client

    def build_prompt(self, scene: str, panel_number: int, style: Optional[str] = None) -> str:
        style = style or IMAGE_CONSTANTS["default_style"]
        return f"""Draw manga panel {panel_number}.

SCENE:
{scene}

STYLE: {style}

REQUIREMENTS:
- One panel, clear focal point
- Expressive characters, dynamic composition
- No speech bubbles, captions or written text in the image"""

    def illustrate_panel(self, scene: str, panel_number: int, style: Optional[str] = None) -> bytes:
        """Generate one panel and return the image bytes."""
        response = self.client.models.generate_content(
            model=self.model,
            contents=[self.build_prompt(scene, panel_number, style)],
            config=self.config,
        )
        return extract_image_from_response(response)


def assemble_episode_pdf(panels: list[bytes], title: str = "") -> bytes:
    """Build a PDF with one panel per page, in order."""
    if not panels:
        raise ValueError("Cannot assemble a PDF without panels")

    pages = [Image.open(BytesIO(data)).convert("RGB") for data in panels]
    buffer = BytesIO()
    pages[0].save(
        buffer,
        format="PDF",
        save_all=True,
        append_images=pages[1:],
        title=title,
    )
    return buffer.getvalue()
