"""Pydantic models for API requests."""

from pydantic import Field, field_validator

from ...config.preferences import (
    MAX_SELECTIONS,
    MIN_SELECTIONS,
    VALID_ART_STYLES,
    VALID_CONTENT_RATINGS,
    VALID_GENRES,
    VALID_TARGET_AUDIENCES,
    VALID_THEMES,
)
from ...core.types import CamelModel, UserPreferencesData
from ..config import MAX_STORIES_PER_WORKFLOW


def _check_choices(values: list[str], allowed: tuple[str, ...], label: str) -> list[str]:
    invalid = [value for value in values if value not in allowed]
    if invalid:
        raise ValueError(f"Invalid {label}: {', '.join(invalid)}")
    return values


class PreferencesRequest(CamelModel):
    """Taste profile submitted by a user."""

    genres: list[str] = Field(..., min_length=MIN_SELECTIONS, max_length=MAX_SELECTIONS)
    themes: list[str] = Field(..., min_length=MIN_SELECTIONS, max_length=MAX_SELECTIONS)
    art_style: str
    target_audience: str
    content_rating: str

    @field_validator("genres")
    @classmethod
    def _valid_genres(cls, v: list[str]) -> list[str]:
        return _check_choices(v, VALID_GENRES, "genres")

    @field_validator("themes")
    @classmethod
    def _valid_themes(cls, v: list[str]) -> list[str]:
        return _check_choices(v, VALID_THEMES, "themes")

    @field_validator("art_style")
    @classmethod
    def _valid_art_style(cls, v: str) -> str:
        if v not in VALID_ART_STYLES:
            raise ValueError(f"Invalid art style: {v}")
        return v

    @field_validator("target_audience")
    @classmethod
    def _valid_target_audience(cls, v: str) -> str:
        if v not in VALID_TARGET_AUDIENCES:
            raise ValueError(f"Invalid target audience: {v}")
        return v

    @field_validator("content_rating")
    @classmethod
    def _valid_content_rating(cls, v: str) -> str:
        if v not in VALID_CONTENT_RATINGS:
            raise ValueError(f"Invalid content rating: {v}")
        return v

    def to_preferences(self) -> UserPreferencesData:
        return UserPreferencesData.model_validate(self.model_dump())


class StartWorkflowRequest(CamelModel):
    """Request body for starting a batch workflow."""

    number_of_stories: int = Field(
        ...,
        ge=1,
        le=MAX_STORIES_PER_WORKFLOW,
        description="How many stories to generate, one after another",
        examples=[3],
    )


class SessionRequest(CamelModel):
    email: str | None = Field(default=None, max_length=320)
