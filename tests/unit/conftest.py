"""Pytest fixtures: an in-memory pipeline with fake collaborators."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from manga_pipeline.api.auth.tokens import create_access_token
from manga_pipeline.api.database.store import MemoryEntityStore
from manga_pipeline.api.main import create_app
from manga_pipeline.api.services.content_store import LocalContentStore
from manga_pipeline.api.services.context import build_pipeline
from manga_pipeline.core.insights_client import InsightsClient
from manga_pipeline.core.metrics import MetricsRecorder
from manga_pipeline.core.resilience import BreakerRegistry, RetryHandler
from manga_pipeline.core.types import QlooInsights, UserPreferencesData

from .factories import EPISODE_TEXT, STORY_TEXT, USER_ID, RecordingTransport, png_bytes


@pytest.fixture
def preferences():
    return UserPreferencesData(
        genres=["Action", "Fantasy"],
        themes=["Friendship", "Redemption"],
        art_style="Traditional",
        target_audience="Teens",
        content_rating="PG-13",
    )


@pytest.fixture
def insights():
    return QlooInsights.model_validate(
        {
            "recommendations": [{"category": "Action", "score": 0.9}],
            "trends": [{"topic": "ronin", "popularity": 0.7}],
        }
    )


@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def metric_data():
    """Datapoints recorded by the pipeline's metrics sink."""
    return []


@pytest.fixture
def text_generator():
    generator = AsyncMock()
    generator.generate_story = AsyncMock(return_value=STORY_TEXT)
    generator.generate_episode = AsyncMock(return_value=EPISODE_TEXT)
    return generator


@pytest.fixture
def image_generator():
    generator = AsyncMock()
    generator.generate_panel = AsyncMock(return_value=png_bytes())
    return generator


@pytest.fixture
def pipeline(tmp_path, store, transport, metric_data, text_generator, image_generator):
    """PipelineContext over the memory store, a tmp content dir and mocked generators."""
    metrics = MetricsRecorder(environment="test", service="manga-pipeline", sink=metric_data.append)
    breakers = BreakerRegistry(metrics=metrics)
    return build_pipeline(
        store,
        transport,
        content=LocalContentStore(tmp_path / "content"),
        metrics=metrics,
        breakers=breakers,
        text_generator=text_generator,
        image_generator=image_generator,
        insights=InsightsClient("", "", breakers=breakers, retry=RetryHandler()),
    )


@pytest.fixture
def client(pipeline):
    """TestClient around an app that uses the test pipeline."""
    with TestClient(create_app(pipeline)) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    token = create_access_token(USER_ID, email="reader@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_user_headers():
    token = create_access_token("someone-else")
    return {"Authorization": f"Bearer {token}"}
