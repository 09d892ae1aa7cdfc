"""
Client for the cultural-insight collaborator.

POSTs the user's taste profile and returns recommendations and trends.
Errors are mapped onto the pipeline taxonomy so the retry policy can tell
transient failures (timeouts, 408, 429, 5xx, transport errors) from
permanent ones (other 4xx, malformed responses).

When no API URL is configured, insights are derived locally from the
preferences so development and tests never need the real service.
"""

import logging
from typing import Any, Optional

import httpx

from ..config.resilience import INSIGHTS_BREAKER
from .errors import ExternalServiceError, OperationTimeoutError, ThrottlingError
from .metrics import MetricsRecorder, PerformanceTimer
from .resilience import BreakerRegistry, RetryHandler, call_with_resilience
from .types import InsightRecommendation, InsightTrend, QlooInsights, UserPreferencesData

logger = logging.getLogger(__name__)

USER_AGENT = "MangaPipeline/1.0"
MAX_RECOMMENDATIONS = 10
MAX_TRENDS = 5


def build_insights_request(preferences: UserPreferencesData) -> dict[str, Any]:
    return {
        "user_preferences": {
            "genres": preferences.genres,
            "themes": preferences.themes,
            "art_style": preferences.art_style,
            "target_audience": preferences.target_audience,
            "content_rating": preferences.content_rating,
        },
        "request_type": "manga_insights",
        "include_recommendations": True,
        "include_trends": True,
        "max_recommendations": MAX_RECOMMENDATIONS,
        "max_trends": MAX_TRENDS,
    }


def parse_insights_response(payload: Any) -> QlooInsights:
    """Convert a collaborator response into QlooInsights.

    Raises:
        ExternalServiceError: the response reports an error or lacks
            recommendations or trends (not retryable)
    """
    if not isinstance(payload, dict):
        raise ExternalServiceError("Invalid insights response: not an object", service=INSIGHTS_BREAKER)
    if payload.get("status") == "error":
        raise ExternalServiceError(
            f"Insights service returned error: {payload.get('message') or 'Unknown error'}",
            service=INSIGHTS_BREAKER,
        )

    recommendations = payload.get("recommendations")
    trends = payload.get("trends")
    if not isinstance(recommendations, list):
        raise ExternalServiceError("Invalid insights response: missing recommendations", service=INSIGHTS_BREAKER)
    if not isinstance(trends, list):
        raise ExternalServiceError("Invalid insights response: missing trends", service=INSIGHTS_BREAKER)

    return QlooInsights(
        recommendations=[
            InsightRecommendation(
                category=rec.get("category") or "unknown",
                score=rec.get("score") if isinstance(rec.get("score"), (int, float)) else 0,
                attributes=rec.get("attributes") or {},
            )
            for rec in recommendations
            if isinstance(rec, dict)
        ],
        trends=[
            InsightTrend(
                topic=trend.get("topic") or "unknown",
                popularity=trend.get("popularity") if isinstance(trend.get("popularity"), (int, float)) else 0,
            )
            for trend in trends
            if isinstance(trend, dict)
        ],
    )


def derive_local_insights(preferences: UserPreferencesData) -> QlooInsights:
    """Deterministic insights built from the preferences themselves."""
    recommendations = [
        InsightRecommendation(
            category=genre,
            score=round(0.9 - 0.1 * index, 2),
            attributes={
                "themes": preferences.themes,
                "art_style": preferences.art_style,
                "target_audience": preferences.target_audience,
            },
        )
        for index, genre in enumerate(preferences.genres[:MAX_RECOMMENDATIONS])
    ]
    trends = [
        InsightTrend(topic=f"{theme} stories", popularity=round(0.85 - 0.1 * index, 2))
        for index, theme in enumerate(preferences.themes[:MAX_TRENDS])
    ]
    return QlooInsights(recommendations=recommendations, trends=trends)


class InsightsClient:
    """Async client for the cultural-insight service."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        *,
        breakers: BreakerRegistry,
        retry: RetryHandler,
        timeout: float = 10.0,
        metrics: Optional[MetricsRecorder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = breakers.get_or_create(INSIGHTS_BREAKER)
        self.retry = retry
        self.metrics = metrics
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url)

    async def fetch_insights(self, preferences: UserPreferencesData) -> QlooInsights:
        if not self.is_configured:
            logger.info("Insights API not configured, deriving insights locally")
            return derive_local_insights(preferences)

        payload = build_insights_request(preferences)
        return await call_with_resilience(
            lambda: self._request(payload),
            breaker=self.breaker,
            retry=self.retry,
            operation_name="insights.fetch_insights",
        )

    async def _request(self, payload: dict[str, Any]) -> QlooInsights:
        timer = PerformanceTimer("fetch_insights")
        try:
            insights = await self._post(payload)
        except (ExternalServiceError, OperationTimeoutError, ThrottlingError) as e:
            self._record(timer, False, e.code)
            raise
        self._record(timer, True)
        return insights

    async def _post(self, payload: dict[str, Any]) -> QlooInsights:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "User-Agent": USER_AGENT,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise OperationTimeoutError("Insights request timed out") from e
        except httpx.TransportError as e:
            raise ExternalServiceError(
                f"Insights request failed: {e}", service=INSIGHTS_BREAKER, retryable=True
            ) from e

        status = response.status_code
        if status == 429:
            raise ThrottlingError("Insights service is throttling requests")
        if status == 408:
            raise OperationTimeoutError("Insights request timed out")
        if status >= 500:
            raise ExternalServiceError(
                f"Insights request failed with status {status}",
                service=INSIGHTS_BREAKER,
                retryable=True,
                details={"statusCode": status},
            )
        if status >= 400:
            raise ExternalServiceError(
                f"Insights request failed with status {status}",
                service=INSIGHTS_BREAKER,
                details={"statusCode": status},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ExternalServiceError("Invalid insights response: not JSON", service=INSIGHTS_BREAKER) from e
        return parse_insights_response(body)

    def _record(self, timer: PerformanceTimer, success: bool, error_code: Optional[str] = None) -> None:
        if self.metrics:
            self.metrics.record_external_call(INSIGHTS_BREAKER, "fetch_insights", timer.stop(), success, error_code)
