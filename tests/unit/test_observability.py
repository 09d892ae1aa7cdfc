"""Unit tests for correlation ids, structured logging and metrics."""

import asyncio
import json
import logging

import pytest

from manga_pipeline.api.logging import CorrelationFilter, JSONFormatter, WorkflowLogger
from manga_pipeline.core.correlation import (
    CorrelationScope,
    get_correlation_id,
    resolve_correlation_id,
    set_correlation_id,
    clear_correlation_id,
)
from manga_pipeline.core.metrics import MetricsRecorder, MetricNamespace, PerformanceTimer


class TestCorrelation:
    """Tests for the correlation context."""

    def test_scope_sets_and_restores(self):
        clear_correlation_id()
        with CorrelationScope("outer"):
            with CorrelationScope("inner") as inner:
                assert inner == "inner"
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"
        assert get_correlation_id() is None

    def test_scope_generates_id_when_missing(self):
        with CorrelationScope() as correlation_id:
            assert correlation_id
            assert get_correlation_id() == correlation_id

    def test_set_correlation_id_generates_one(self):
        value = set_correlation_id()
        try:
            assert get_correlation_id() == value
        finally:
            clear_correlation_id()

    def test_resolve_prefers_first_non_blank_candidate(self):
        assert resolve_correlation_id(None, "  ", "abc", "def") == "abc"
        assert resolve_correlation_id(None, None)

    @pytest.mark.asyncio
    async def test_concurrent_tasks_keep_their_own_id(self):
        async def handle(request_id):
            with CorrelationScope(request_id):
                await asyncio.sleep(0)
                return get_correlation_id()

        results = await asyncio.gather(*(handle(f"req-{i}") for i in range(5)))

        assert results == [f"req-{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_worker_threads_see_the_id(self):
        with CorrelationScope("threaded"):
            seen = await asyncio.to_thread(get_correlation_id)
        assert seen == "threaded"


class TestStructuredLogging:
    """Tests for the JSON formatter and correlation filter."""

    def _record(self, **extra):
        record = logging.LogRecord("manga_pipeline.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_structured_fields(self):
        record = self._record(user_id="u1", stage="story_generation", unrelated="ignored")

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["user_id"] == "u1"
        assert data["stage"] == "story_generation"
        assert "unrelated" not in data

    def test_filter_stamps_current_correlation_id(self):
        record = self._record()
        with CorrelationScope("corr-1"):
            CorrelationFilter().filter(record)

        assert record.correlation_id == "corr-1"

    def test_workflow_logger_stage_failed_carries_error_code(self, caplog):
        from manga_pipeline.core.errors import ValidationError

        with caplog.at_level(logging.ERROR, logger="manga_pipeline.workflow"):
            WorkflowLogger().stage_failed("story_generation", ValidationError("bad", code="X_CODE"), user_id="u1")

        record = caplog.records[-1]
        assert record.stage == "story_generation"
        assert record.error_code == "X_CODE"
        assert record.error_type == "ValidationError"


class TestMetricsRecorder:
    """Tests for MetricsRecorder."""

    def test_common_dimensions_include_correlation_id(self):
        data = []
        recorder = MetricsRecorder(environment="test", service="svc", sink=data.append)

        with CorrelationScope("corr-9"):
            recorder.record_generation("story", True)

        assert data[0].namespace == MetricNamespace.BUSINESS.value
        assert data[0].name == "StoryGenerationSuccess"
        assert data[0].dimensions == {"Environment": "test", "Service": "svc", "CorrelationId": "corr-9"}

    def test_generation_with_duration_records_handler_latency(self):
        data = []
        MetricsRecorder(sink=data.append).record_generation("episode", False, 120.0)

        assert [d.name for d in data] == ["EpisodeGenerationFailure", "HandlerDuration"]
        assert data[1].unit == "Milliseconds"
        assert data[1].value == 120.0

    def test_failed_external_call_records_error_code(self):
        data = []
        MetricsRecorder(sink=data.append).record_external_call("insights", "fetch", 10.0, False, "TIMEOUT_ERROR")

        assert [d.name for d in data] == ["ExternalAPICall", "ExternalAPILatency", "ExternalAPIError"]
        assert data[2].dimensions["ErrorCode"] == "TIMEOUT_ERROR"

    def test_failing_sink_never_raises(self):
        def broken_sink(datum):
            raise RuntimeError("sink down")

        MetricsRecorder(sink=broken_sink).record_batch_workflow("started", 3)

    def test_performance_timer_measures_milliseconds(self):
        timer = PerformanceTimer("op")
        duration = timer.stop()
        assert duration >= 0
        assert timer.duration_ms == duration
