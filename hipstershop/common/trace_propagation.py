"""
分布式追踪传播 - 请求 Segment 与跨服务 Context Propagation

- SegmentMiddleware 为每个入站请求开启一个 Segment（服务入口）
- Segment 命名策略：固定名称，或按 Host 通配符动态命名
- inject_trace_headers / TracedTransport 在出站 HTTP 调用时传递 trace context

使用方法:
  1. app.add_middleware(SegmentMiddleware, recorder=recorder, naming_strategy=strategy)
  2. httpx.AsyncClient(transport=TracedTransport(recorder))
"""

import logging
import re
from typing import Any

import httpx
from fastapi import Request
from opentelemetry import trace
from opentelemetry.propagate import extract, inject
from starlette.middleware.base import BaseHTTPMiddleware

from . import metrics
from .structured_logging import reset_request_id, set_request_id
from .trace_context import TraceRecorder

logger = logging.getLogger(__name__)


# ==================== Segment 命名 ====================


def wildcard_match(pattern: str, text: str) -> bool:
    """
    通配符匹配（大小写不敏感）

    * 匹配任意个字符，? 匹配单个字符，其余字符按字面匹配。
    """
    regex = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch) for ch in pattern
    )
    return re.fullmatch(regex, text, flags=re.IGNORECASE | re.DOTALL) is not None


class SegmentNamingStrategy:
    """Segment 命名策略基类"""

    def name_for(self, host: str | None) -> str:
        raise NotImplementedError


class FixedSegmentNamingStrategy(SegmentNamingStrategy):
    """所有请求使用同一个 Segment 名称"""

    def __init__(self, name: str):
        if not name:
            raise ValueError("Segment name must not be empty")
        self.name = name

    def name_for(self, host: str | None) -> str:
        return self.name


class DynamicSegmentNamingStrategy(SegmentNamingStrategy):
    """
    Host 匹配通配符时使用 Host 作为名称，否则使用后备名称

    Args:
        fallback_name: 后备名称
        recognized_hosts: Host 通配符（如 *.example.com）
    """

    def __init__(self, fallback_name: str, recognized_hosts: str = "*"):
        if not fallback_name:
            raise ValueError("Fallback segment name must not be empty")
        self.fallback_name = fallback_name
        self.recognized_hosts = recognized_hosts

    def name_for(self, host: str | None) -> str:
        if host and wildcard_match(self.recognized_hosts, host):
            return host
        return self.fallback_name


def segment_naming_strategy(settings) -> SegmentNamingStrategy:
    """
    根据配置选择命名策略

    dns_naming 非空时使用动态命名，否则使用固定名称。
    """
    if settings.dns_naming.strip():
        return DynamicSegmentNamingStrategy(settings.segment_name, settings.dns_naming.strip())
    return FixedSegmentNamingStrategy(settings.segment_name)


# ==================== Context 提取 / 注入 ====================


def extract_trace_context(request: Request) -> Any:
    """
    从 HTTP 请求头中提取 trace context

    Args:
        request: FastAPI Request 对象

    Returns:
        OpenTelemetry Context
    """
    carrier = dict(request.headers)
    return extract(carrier)


def inject_trace_headers(headers: dict[str, str] | None = None) -> dict[str, str]:
    """
    将当前 trace context 注入到 HTTP 请求头

    Args:
        headers: 现有请求头（可选）

    Returns:
        包含 trace 信息的请求头
    """
    if headers is None:
        headers = {}

    inject(headers)

    # 添加自定义 trace ID（用于日志关联）
    span = trace.get_current_span()
    if span and span.get_span_context().is_valid:
        headers["X-Trace-ID"] = format(span.get_span_context().trace_id, "032x")
        headers["X-Span-ID"] = format(span.get_span_context().span_id, "016x")

    return headers


# ==================== 入站：请求 Segment ====================


class SegmentMiddleware(BaseHTTPMiddleware):
    """
    FastAPI 中间件：为每个请求开启 Segment

    提取上游 trace context，记录请求与响应状态（4xx 为 error，5xx 为 fault），
    记录未处理异常后原样抛出，并始终结束 Segment。
    """

    def __init__(
        self,
        app,
        recorder: TraceRecorder,
        naming_strategy: SegmentNamingStrategy,
        metrics_enabled: bool = True,
    ):
        super().__init__(app)
        self.recorder = recorder
        self.naming_strategy = naming_strategy
        self.metrics_enabled = metrics_enabled

    async def dispatch(self, request: Request, call_next):
        name = self.naming_strategy.name_for(request.url.hostname)
        segment = self.recorder.begin_segment(
            name,
            parent_context=extract_trace_context(request),
            attributes={
                "http.scheme": request.url.scheme,
                "http.target": request.url.path,
            },
        )
        if segment is None:
            return await call_next(request)

        segment.put_http_request(
            request.method,
            str(request.url),
            client_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        request_id = request.headers.get("X-Request-ID") or segment.trace_id
        segment.span.set_attribute("request.id", request_id)
        request_id_token = set_request_id(request_id)

        try:
            response = await call_next(request)
        except Exception as e:
            segment.add_exception(e)
            raise
        else:
            segment.set_http_status(response.status_code)
            response.headers["X-Trace-ID"] = segment.trace_id
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            reset_request_id(request_id_token)
            if self.metrics_enabled:
                metrics.record_segment(segment.name, segment.error, segment.fault)
            self.recorder.end_segment(segment)


# ==================== 出站：HTTP 调用 ====================


class TracedTransport(httpx.AsyncBaseTransport):
    """
    httpx 异步传输层包装：每个出站请求一个 Subsegment

    Subsegment 以目标主机命名，注入 trace 请求头，记录状态码与异常。
    """

    def __init__(self, recorder: TraceRecorder, transport: httpx.AsyncBaseTransport | None = None):
        self.recorder = recorder
        self._transport = transport or httpx.AsyncHTTPTransport()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        subsegment = self.recorder.begin_subsegment(request.url.host or "remote")
        try:
            if subsegment is not None:
                subsegment.put_http_request(request.method, str(request.url))
            request.headers.update(inject_trace_headers())

            response = await self._transport.handle_async_request(request)
        except Exception as e:
            logger.warning(f"Outbound request {request.method} {request.url} failed: {e}")
            if subsegment is not None:
                subsegment.add_exception(e)
            raise
        else:
            if subsegment is not None:
                subsegment.set_http_status(response.status_code)
            return response
        finally:
            self.recorder.end_subsegment(subsegment)

    async def aclose(self) -> None:
        await self._transport.aclose()
