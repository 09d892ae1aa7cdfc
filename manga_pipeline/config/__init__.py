"""
Configuration for the manga generation pipeline.

Re-exports collaborator and resilience configuration.
"""

from .llm import get_inference_lm, get_inference_model_name
from .image import (
    IMAGE_CONSTANTS,
    get_image_client,
    get_image_model,
    get_image_config,
    extract_image_from_response,
)
from .resilience import (
    DEFAULT_BREAKER,
    DEFAULT_RETRY,
    EXTERNAL_API_RETRY,
    STORE_RETRY,
)

__all__ = [
    # LLM
    "get_inference_lm",
    "get_inference_model_name",
    # Image
    "IMAGE_CONSTANTS",
    "get_image_client",
    "get_image_model",
    "get_image_config",
    "extract_image_from_response",
    # Resilience
    "DEFAULT_BREAKER",
    "DEFAULT_RETRY",
    "EXTERNAL_API_RETRY",
    "STORE_RETRY",
]
