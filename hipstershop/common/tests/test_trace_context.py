"""
追踪上下文单元测试
"""

import json
import logging

import pytest
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from hipstershop.common.exceptions import SegmentNotFoundError, SubsegmentNotFoundError
from hipstershop.common.tests.fakes import spans_by_name
from hipstershop.common.trace_context import ContextMissingStrategy, TraceRecorder


class TestSegment:
    """Segment 生命周期测试"""

    def test_begin_and_end_segment(self, recorder, span_exporter):
        """测试开始和结束 Segment"""
        segment = recorder.begin_segment("eCommence")

        assert recorder.current_segment() is segment
        assert not segment.closed

        recorder.end_segment(segment)

        assert segment.closed
        assert recorder.current_segment() is None
        assert [s.name for s in span_exporter.get_finished_spans()] == ["eCommence"]

    def test_end_segment_is_idempotent(self, recorder, span_exporter):
        """测试重复结束 Segment 只导出一次"""
        segment = recorder.begin_segment("eCommence")
        recorder.end_segment(segment)
        recorder.end_segment(segment)
        recorder.end_segment(None)

        assert len(span_exporter.get_finished_spans()) == 1

    def test_nested_segment_restores_outer(self, recorder):
        """测试内层 Segment 结束后恢复外层"""
        with recorder.in_segment("outer") as outer:
            outer_sub = recorder.begin_subsegment("outer-op")
            with recorder.in_segment("inner") as inner:
                assert recorder.current_segment() is inner
                assert recorder.current_subsegment() is None
            assert recorder.current_segment() is outer
            assert recorder.current_subsegment() is outer_sub
            recorder.end_subsegment(outer_sub)

    def test_end_segment_closes_leaked_subsegments(self, recorder, caplog):
        """测试结束 Segment 时关闭遗留的 Subsegment"""
        segment = recorder.begin_segment("eCommence")
        leaked = recorder.begin_subsegment("leaked")

        with caplog.at_level(logging.WARNING):
            recorder.end_segment(segment)

        assert leaked.closed
        assert "left open" in caplog.text
        assert recorder.current_subsegment() is None

    def test_get_current_segment_raises_without_segment(self, recorder):
        """测试严格获取当前 Segment"""
        with pytest.raises(SegmentNotFoundError):
            recorder.get_current_segment()

    def test_upstream_context_is_parent(self, recorder, span_exporter):
        """测试使用上游传播的 trace context"""
        from opentelemetry.propagate import extract

        trace_id = "4bf92f3577b34da6a3ce929d0e0e4736"
        parent_id = "00f067aa0ba902b7"
        ctx = extract({"traceparent": f"00-{trace_id}-{parent_id}-01"})

        with recorder.in_segment("eCommence", parent_context=ctx) as segment:
            assert segment.trace_id == trace_id

        span = span_exporter.get_finished_spans()[0]
        assert format(span.parent.span_id, "016x") == parent_id

    def test_disabled_recorder_returns_none(self, tracer_provider, span_exporter):
        """测试关闭追踪"""
        recorder = TraceRecorder(tracer=tracer_provider.get_tracer("test"), enabled=False)

        assert recorder.begin_segment("eCommence") is None
        assert recorder.begin_subsegment("op") is None
        assert span_exporter.get_finished_spans() == ()


class TestSubsegment:
    """Subsegment 生命周期测试"""

    def test_nested_subsegments(self, recorder, span_exporter):
        """测试嵌套 Subsegment 的父子关系"""
        with recorder.in_segment("eCommence") as segment:
            outer = recorder.begin_subsegment("index")
            inner = recorder.begin_subsegment("get_product_list")

            assert outer.parent is segment
            assert inner.parent is outer
            assert inner.segment is segment
            assert recorder.current_subsegment() is inner

            recorder.end_subsegment(inner)
            assert recorder.current_subsegment() is outer
            recorder.end_subsegment(outer)

        spans = spans_by_name(span_exporter)
        assert spans["get_product_list"][0].parent.span_id == spans["index"][0].context.span_id
        assert spans["index"][0].parent.span_id == spans["eCommence"][0].context.span_id

    def test_end_subsegment_is_idempotent(self, recorder, span_exporter):
        """测试重复结束 Subsegment"""
        with recorder.in_segment("eCommence"):
            subsegment = recorder.begin_subsegment("op")
            recorder.end_subsegment(subsegment)
            recorder.end_subsegment(subsegment)
            recorder.end_subsegment(None)

        assert len(spans_by_name(span_exporter)["op"]) == 1

    def test_end_out_of_order(self, recorder, caplog):
        """测试乱序结束后按后进先出恢复 OpenTelemetry 上下文"""
        enclosing_span = trace.get_current_span()
        with recorder.in_segment("eCommence") as segment:
            outer = recorder.begin_subsegment("outer")
            inner = recorder.begin_subsegment("inner")

            with caplog.at_level(logging.WARNING):
                recorder.end_subsegment(outer)

            assert "out of order" in caplog.text
            assert outer.closed
            assert recorder.current_subsegment() is inner
            assert trace.get_current_span() is inner.span

            recorder.end_subsegment(inner)
            assert recorder.current_subsegment() is None
            assert trace.get_current_span() is segment.span

        assert trace.get_current_span() is enclosing_span

    def test_begin_after_out_of_order_end(self, recorder, span_exporter):
        """测试乱序结束后新开的 Subsegment 挂在仍打开的 Subsegment 下"""
        with recorder.in_segment("eCommence") as segment:
            outer = recorder.begin_subsegment("outer")
            inner = recorder.begin_subsegment("inner")
            recorder.end_subsegment(outer)

            sibling = recorder.begin_subsegment("sibling")
            assert sibling.parent is inner
            recorder.end_subsegment(sibling)
            assert trace.get_current_span() is inner.span

            recorder.end_subsegment(inner)
            assert trace.get_current_span() is segment.span

        spans = spans_by_name(span_exporter)
        assert spans["sibling"][0].parent.span_id == spans["inner"][0].context.span_id

    def test_end_segment_after_out_of_order_end(self, recorder):
        """测试 Segment 结束时恢复被延迟的上下文"""
        enclosing_span = trace.get_current_span()
        segment = recorder.begin_segment("eCommence")
        outer = recorder.begin_subsegment("outer")
        recorder.begin_subsegment("inner")
        recorder.end_subsegment(outer)

        recorder.end_segment(segment)

        assert all(s.closed for s in segment.subsegments)
        assert recorder.current_segment() is None
        assert trace.get_current_span() is enclosing_span

    def test_missing_segment_logs_error(self, recorder, caplog):
        """测试缺少 Segment 时记录错误日志"""
        with caplog.at_level(logging.ERROR):
            assert recorder.begin_subsegment("op") is None

        assert "Trace context missing" in caplog.text

    def test_missing_segment_ignored(self, tracer_provider, caplog):
        """测试 ignore 策略不记录日志"""
        recorder = TraceRecorder(
            tracer=tracer_provider.get_tracer("test"),
            context_missing=ContextMissingStrategy.IGNORE,
        )

        with caplog.at_level(logging.DEBUG, logger="hipstershop.common.trace_context"):
            assert recorder.begin_subsegment("op") is None

        assert "Trace context missing" not in caplog.text

    def test_context_missing_from_string(self, tracer_provider):
        """测试从字符串解析策略"""
        recorder = TraceRecorder(tracer=tracer_provider.get_tracer("test"), context_missing="ignore")
        assert recorder.context_missing is ContextMissingStrategy.IGNORE

        with pytest.raises(ValueError):
            TraceRecorder(context_missing="explode")

    def test_get_current_subsegment_raises(self, recorder):
        """测试严格获取当前 Subsegment"""
        with recorder.in_segment("eCommence"):
            with pytest.raises(SubsegmentNotFoundError):
                recorder.get_current_subsegment()

    def test_in_subsegment_records_exception(self, recorder):
        """测试上下文管理器记录异常"""
        with recorder.in_segment("eCommence"):
            with pytest.raises(ValueError):
                with recorder.in_subsegment("op") as subsegment:
                    raise ValueError("bad")

        assert subsegment.closed
        assert subsegment.fault
        assert len(subsegment.exceptions) == 1


class TestTraceEntity:
    """实体数据测试"""

    def test_put_metadata(self, recorder, span_exporter):
        """测试元数据写入实体和 Span 属性"""
        with recorder.in_segment("eCommence") as segment:
            segment.put_metadata("Class", "AppController", namespace="ClassInfo")
            segment.put_metadata("items", {"count": 2})
            segment.put_metadata("retries", 3)

        assert segment.metadata == {
            "ClassInfo": {"Class": "AppController"},
            "default": {"items": {"count": 2}, "retries": 3},
        }
        attributes = span_exporter.get_finished_spans()[0].attributes
        assert attributes["metadata.ClassInfo.Class"] == "AppController"
        assert json.loads(attributes["metadata.default.items"]) == {"count": 2}
        assert attributes["metadata.default.retries"] == 3

    def test_recorder_put_metadata_targets_innermost(self, recorder):
        """测试 recorder.put_metadata 写入最内层实体"""
        with recorder.in_segment("eCommence") as segment:
            assert recorder.put_metadata("user", "u1")
            with recorder.in_subsegment("op") as subsegment:
                assert recorder.put_metadata("product", "p1")

        assert segment.metadata == {"default": {"user": "u1"}}
        assert subsegment.metadata == {"default": {"product": "p1"}}
        assert recorder.put_metadata("orphan", 1) is False

    def test_add_exception_deduplicates(self, recorder, span_exporter):
        """测试同一个异常对象只记录一次"""
        error = RuntimeError("boom")

        with recorder.in_segment("eCommence") as segment:
            assert segment.add_exception(error) is True
            assert segment.add_exception(error) is False
            assert segment.add_exception(RuntimeError("boom")) is True

        assert len(segment.exceptions) == 2
        span = span_exporter.get_finished_spans()[0]
        assert len([e for e in span.events if e.name == "exception"]) == 2
        assert span.status.status_code == StatusCode.ERROR

    @pytest.mark.parametrize(
        "status_code,error,fault",
        [
            (200, False, False),
            (302, False, False),
            (404, True, False),
            (429, True, False),
            (500, False, True),
            (503, False, True),
        ],
    )
    def test_http_status_flags(self, recorder, status_code, error, fault):
        """测试 4xx 为 error、5xx 为 fault"""
        with recorder.in_segment("eCommence") as segment:
            segment.put_http_request("GET", "http://localhost/cart")
            segment.set_http_status(status_code)

        assert segment.error is error
        assert segment.fault is fault
        assert segment.http == {
            "request": {"method": "GET", "url": "http://localhost/cart"},
            "response": {"status": status_code},
        }

    def test_to_dict(self, recorder):
        """测试转换为字典"""
        with recorder.in_segment("eCommence") as segment:
            with recorder.in_subsegment("index"):
                pass
            segment.add_exception(ValueError("bad"))

        data = segment.to_dict()
        assert data["name"] == "eCommence"
        assert data["subsegments"] == ["index"]
        assert data["exceptions"] == ["ValueError: bad"]
        assert len(data["trace_id"]) == 32
        assert data["end_time"] >= data["start_time"]
