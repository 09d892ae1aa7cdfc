"""Shared domain types for the manga generation pipeline.

All wire-facing models serialize with camelCase keys (events, stored items
and API bodies share one shape) while Python code uses snake_case.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with microseconds and a Z suffix.

    Fixed width, so lexicographic order is chronological order.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def to_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserPreferencesData(CamelModel):
    """A user's taste profile."""

    genres: list[str] = Field(..., description="Preferred genres")
    themes: list[str] = Field(..., description="Preferred themes")
    art_style: str = Field(..., description="Preferred art style")
    target_audience: str = Field(..., description="Intended audience")
    content_rating: str = Field(..., description="Maximum content rating")

    def describe(self) -> str:
        """Plain-text rendering used in generation prompts."""
        return (
            f"Genres: {', '.join(self.genres)}\n"
            f"Themes: {', '.join(self.themes)}\n"
            f"Art style: {self.art_style}\n"
            f"Target audience: {self.target_audience}\n"
            f"Content rating: {self.content_rating}"
        )


class InsightRecommendation(CamelModel):
    category: str
    score: float = 0.0
    attributes: dict[str, Any] = Field(default_factory=dict)


class InsightTrend(CamelModel):
    topic: str
    popularity: float = 0.0


class QlooInsights(CamelModel):
    """Cultural insights returned by the insight collaborator."""

    recommendations: list[InsightRecommendation] = Field(default_factory=list)
    trends: list[InsightTrend] = Field(default_factory=list)

    def describe(self) -> str:
        lines = []
        for rec in self.recommendations:
            lines.append(f"- {rec.category} (score {rec.score:.2f})")
        for trend in self.trends:
            lines.append(f"- trending: {trend.topic} (popularity {trend.popularity:.2f})")
        return "\n".join(lines) if lines else "No cultural insights available."


class ParsedContent(BaseModel):
    """Generated text split into a title and a body."""

    title: str
    body: str


class ContinuationEligibility(CamelModel):
    can_continue: bool
    next_episode_number: Optional[int] = None
    reason_code: Optional[str] = None
    reason: Optional[str] = None
