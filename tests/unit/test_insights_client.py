"""Unit tests for the cultural-insight client."""

import httpx
import pytest

from manga_pipeline.core.errors import ExternalServiceError, OperationTimeoutError, ThrottlingError
from manga_pipeline.core.insights_client import (
    InsightsClient,
    build_insights_request,
    derive_local_insights,
    parse_insights_response,
)
from manga_pipeline.core.resilience import BreakerRegistry, RetryConfig, RetryHandler

API_URL = "https://insights.example.com/v1/insights"

OK_BODY = {
    "recommendations": [{"category": "Action", "score": 0.92, "attributes": {"tone": "dark"}}],
    "trends": [{"topic": "cyberpunk", "popularity": 0.81}],
}


async def _no_sleep(delay):
    return None


def _client(handler, max_attempts=3):
    return InsightsClient(
        API_URL,
        "secret-key",
        breakers=BreakerRegistry(),
        retry=RetryHandler(RetryConfig(max_attempts=max_attempts, jitter=0.0), sleep=_no_sleep),
        transport=httpx.MockTransport(handler),
    )


class TestParsing:
    """Tests for request building and response parsing."""

    def test_request_carries_the_profile(self, preferences):
        payload = build_insights_request(preferences)
        assert payload["user_preferences"]["genres"] == ["Action", "Fantasy"]
        assert payload["request_type"] == "manga_insights"

    def test_parse_response(self):
        insights = parse_insights_response(OK_BODY)
        assert insights.recommendations[0].category == "Action"
        assert insights.trends[0].popularity == 0.81

    def test_missing_fields_get_defaults(self):
        insights = parse_insights_response({"recommendations": [{"score": "high"}], "trends": [{}]})
        assert insights.recommendations[0].category == "unknown"
        assert insights.recommendations[0].score == 0
        assert insights.trends[0].topic == "unknown"

    @pytest.mark.parametrize(
        "body",
        [
            [],
            {"status": "error", "message": "quota"},
            {"trends": []},
            {"recommendations": []},
        ],
    )
    def test_invalid_responses(self, body):
        with pytest.raises(ExternalServiceError):
            parse_insights_response(body)

    def test_local_derivation_is_deterministic(self, preferences):
        first = derive_local_insights(preferences)
        assert first == derive_local_insights(preferences)
        assert [r.category for r in first.recommendations] == preferences.genres


class TestInsightsClient:
    """Tests for InsightsClient over a mock transport."""

    @pytest.mark.asyncio
    async def test_posts_profile_with_bearer_key(self, preferences):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=OK_BODY)

        insights = await _client(handler).fetch_insights(preferences)

        assert insights.recommendations[0].category == "Action"
        assert seen[0].headers["Authorization"] == "Bearer secret-key"
        assert seen[0].method == "POST"

    @pytest.mark.asyncio
    async def test_unconfigured_client_derives_locally(self, preferences):
        client = InsightsClient("", "", breakers=BreakerRegistry(), retry=RetryHandler())
        insights = await client.fetch_insights(preferences)
        assert insights.recommendations

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, preferences):
        responses = [httpx.Response(503), httpx.Response(200, json=OK_BODY)]

        def handler(request):
            return responses.pop(0)

        insights = await _client(handler).fetch_insights(preferences)

        assert insights.trends[0].topic == "cyberpunk"
        assert responses == []

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, preferences):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"message": "bad"})

        with pytest.raises(ExternalServiceError) as exc_info:
            await _client(handler).fetch_insights(preferences)

        assert len(calls) == 1
        assert exc_info.value.details["statusCode"] == 400

    @pytest.mark.asyncio
    async def test_throttling_maps_to_throttling_error(self, preferences):
        with pytest.raises(ThrottlingError):
            await _client(lambda request: httpx.Response(429), max_attempts=1).fetch_insights(preferences)

    @pytest.mark.asyncio
    async def test_timeout_maps_to_timeout_error(self, preferences):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(OperationTimeoutError):
            await _client(handler, max_attempts=1).fetch_insights(preferences)

    @pytest.mark.asyncio
    async def test_non_json_body(self, preferences):
        with pytest.raises(ExternalServiceError, match="not JSON"):
            await _client(lambda request: httpx.Response(200, text="<html>")).fetch_insights(preferences)
