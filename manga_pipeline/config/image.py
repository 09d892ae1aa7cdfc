"""
Image generation configuration for episode panels.

Uses Gemini image generation through google-genai.
"""

import base64
import os

from dotenv import load_dotenv
from google import genai
from google.genai.types import GenerateContentConfig, Modality

# Load environment variables from .env file
load_dotenv()

IMAGE_CONSTANTS = {
    "model": os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image"),
    "max_panels": 8,  # Panels generated per episode
    "default_style": "manga style, black and white ink, screentone shading",
}


def get_image_client() -> genai.Client:
    """
    Get the google-genai client for panel generation.

    Uses GOOGLE_API_KEY from environment.
    """
    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise ValueError("GOOGLE_API_KEY not found in environment. Set it in .env file.")

    return genai.Client(api_key=api_key)


def get_image_model() -> str:
    """Get the image model ID."""
    return IMAGE_CONSTANTS["model"]


def get_image_config() -> GenerateContentConfig:
    """Get the default config for image generation."""
    return GenerateContentConfig(
        response_modalities=[Modality.TEXT, Modality.IMAGE]
    )


def extract_image_from_response(response) -> bytes:
    """
    Extract image bytes from a Gemini API response.

    Raises:
        ValueError: If no image found in response
    """
    candidates = getattr(response, "candidates", None) or []
    if not candidates or not candidates[0].content:
        raise ValueError("No candidates in image response")

    for part in candidates[0].content.parts or []:
        if getattr(part, "inline_data", None):
            data = part.inline_data.data
            return base64.b64decode(data) if isinstance(data, str) else data

    raise ValueError("No image found in response")
