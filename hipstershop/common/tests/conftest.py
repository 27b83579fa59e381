"""Pytest配置文件 - 共享的追踪 fixture."""

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from hipstershop.common.call_tracer import CallTracer
from hipstershop.common.tests.fakes import FakeRecorder
from hipstershop.common.trace_context import TraceRecorder


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    """内存 Span 导出器."""
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter) -> TracerProvider:
    """使用内存导出器的 TracerProvider（不设置为全局）."""
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    yield provider
    provider.shutdown()


@pytest.fixture
def recorder(tracer_provider) -> TraceRecorder:
    """真实的 TraceRecorder."""
    return TraceRecorder(tracer=tracer_provider.get_tracer("test"), name="test")


@pytest.fixture
def call_tracer(recorder) -> CallTracer:
    """不记录指标的 CallTracer."""
    return CallTracer(recorder, metrics_enabled=False)


@pytest.fixture
def fake_recorder() -> FakeRecorder:
    """假记录器."""
    return FakeRecorder()
