"""
追踪上下文 - Segment / Subsegment 与 TraceRecorder

在 OpenTelemetry 之上提供 Segment（一次外部请求的根追踪上下文）与
Subsegment（请求内的一次内部操作）两级模型：

- 当前 Segment 与 Subsegment 栈保存在 ContextVar 中，每个线程、每个 asyncio
  任务看到各自独立的值，并发请求之间互不干扰
- 开始实体时挂载 OpenTelemetry Context，结束时卸载，因此 httpx 等已 instrument
  的库产生的 Span 会自然嵌套在当前实体之下
- 所有结束操作幂等，None 句柄为空操作

使用示例：
    recorder = TraceRecorder()

    with recorder.in_segment("eCommence"):
        subsegment = recorder.begin_subsegment("getProductList")
        try:
            ...
        finally:
            recorder.end_subsegment(subsegment)
"""

import json
import logging
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Any

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.trace import SpanKind, Status, StatusCode

from .exceptions import SegmentNotFoundError, SubsegmentNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"

_PRIMITIVE_TYPES = (str, bool, int, float)


def _attribute_value(value: Any) -> Any:
    """把元数据值转换为 Span 属性允许的类型"""
    if isinstance(value, _PRIMITIVE_TYPES):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


class ContextMissingStrategy(str, Enum):
    """当前上下文中没有 Segment 时的处理策略"""

    LOG_ERROR = "log_error"
    IGNORE = "ignore"


class TraceEntity:
    """Segment 与 Subsegment 的公共部分"""

    def __init__(self, name: str, span: trace.Span, token: object | None = None):
        self.name = name
        self.span = span
        self.start_time = time.time()
        self.end_time: float | None = None
        self.metadata: dict[str, dict[str, Any]] = {}
        self.exceptions: list[BaseException] = []
        self.error = False
        self.fault = False
        self.http: dict[str, dict[str, Any]] = {}
        self._token = token

    @property
    def id(self) -> str:
        return format(self.span.get_span_context().span_id, "016x")

    @property
    def trace_id(self) -> str:
        return format(self.span.get_span_context().trace_id, "032x")

    @property
    def closed(self) -> bool:
        return self.end_time is not None

    def put_metadata(self, key: str, value: Any, namespace: str = DEFAULT_NAMESPACE) -> None:
        """
        添加一条元数据

        Args:
            key: 键
            value: 任意值
            namespace: 命名空间
        """
        self.metadata.setdefault(namespace, {})[key] = value
        self.span.set_attribute(f"metadata.{namespace}.{key}", _attribute_value(value))

    def set_metadata(self, metadata: Mapping[str, Mapping[str, Any]]) -> None:
        """按命名空间批量设置元数据"""
        for namespace, values in metadata.items():
            for key, value in values.items():
                self.put_metadata(key, value, namespace=namespace)

    def add_exception(self, exception: BaseException) -> bool:
        """
        记录异常

        同一个异常对象在同一实体上只记录一次。

        Returns:
            是否新记录了该异常
        """
        if any(recorded is exception for recorded in self.exceptions):
            return False

        self.exceptions.append(exception)
        self.fault = True
        self.span.record_exception(exception)
        self.span.set_status(Status(StatusCode.ERROR, f"{type(exception).__name__}: {exception}"))
        return True

    def put_http_request(self, method: str, url: str, **extra: Any) -> None:
        """记录 HTTP 请求信息"""
        self.http["request"] = {"method": method, "url": url, **extra}
        self.span.set_attribute("http.method", method)
        self.span.set_attribute("http.url", url)

    def set_http_status(self, status_code: int) -> None:
        """
        记录响应状态码

        4xx 标记为 error，5xx 标记为 fault。
        """
        self.http.setdefault("response", {})["status"] = status_code
        self.span.set_attribute("http.status_code", status_code)

        if 400 <= status_code < 500:
            self.error = True
        elif status_code >= 500:
            self.fault = True
            self.span.set_status(Status(StatusCode.ERROR, f"HTTP {status_code}"))

    def end(self) -> bool:
        """
        结束 Span 但不恢复 OpenTelemetry 上下文（幂等）

        Returns:
            本次调用是否真正结束了实体
        """
        if self.closed:
            return False

        self.end_time = time.time()
        self.span.end()
        return True

    def detach(self) -> None:
        """恢复 begin 时 attach 之前的 OpenTelemetry 上下文"""
        if self._token is not None:
            otel_context.detach(self._token)
            self._token = None

    def close(self) -> bool:
        """结束实体并恢复上下文（幂等）"""
        ended = self.end()
        self.detach()
        return ended

    def to_dict(self) -> dict[str, Any]:
        """转换为字典（用于日志与调试）"""
        return {
            "name": self.name,
            "id": self.id,
            "trace_id": self.trace_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "error": self.error,
            "fault": self.fault,
            "http": self.http,
            "metadata": self.metadata,
            "exceptions": [f"{type(e).__name__}: {e}" for e in self.exceptions],
        }

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} closed={self.closed}>"


class Segment(TraceEntity):
    """一次外部请求的根追踪上下文"""

    def __init__(self, name: str, span: trace.Span, token: object | None = None):
        super().__init__(name, span, token)
        self.subsegments: list["Subsegment"] = []

        # 结束时恢复的外层上下文
        self._previous_segment: Segment | None = None
        self._previous_stack: tuple[Subsegment, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["subsegments"] = [s.name for s in self.subsegments]
        return data


class Subsegment(TraceEntity):
    """Segment 内的一次内部操作"""

    def __init__(
        self,
        name: str,
        span: trace.Span,
        segment: Segment,
        parent: TraceEntity,
        token: object | None = None,
    ):
        super().__init__(name, span, token)
        self.segment = segment
        self.parent = parent


class TraceRecorder:
    """
    追踪记录器

    提供 begin/end Segment 与 Subsegment 的操作，并维护任务级别的当前上下文。
    """

    def __init__(
        self,
        tracer: trace.Tracer | None = None,
        enabled: bool = True,
        context_missing: ContextMissingStrategy | str = ContextMissingStrategy.LOG_ERROR,
        name: str = "hipstershop",
    ):
        """
        初始化记录器

        Args:
            tracer: OpenTelemetry Tracer（默认使用全局 TracerProvider）
            enabled: 是否启用；关闭后所有 begin 操作返回 None
            context_missing: 缺少 Segment 时的处理策略
            name: 记录器名称（用于 ContextVar 命名）
        """
        self._tracer = tracer
        self.enabled = enabled
        self.context_missing = ContextMissingStrategy(context_missing)
        self._segment_var: ContextVar[Segment | None] = ContextVar(
            f"{name}_segment", default=None
        )
        self._stack_var: ContextVar[tuple[Subsegment, ...]] = ContextVar(
            f"{name}_subsegments", default=()
        )

    @classmethod
    def from_settings(cls, settings, tracer: trace.Tracer | None = None) -> "TraceRecorder":
        """根据 TracingSettings 创建记录器"""
        return cls(
            tracer=tracer,
            enabled=settings.tracing_enabled,
            context_missing=settings.context_missing,
            name=settings.service_name,
        )

    @property
    def tracer(self) -> trace.Tracer:
        if self._tracer is None:
            self._tracer = trace.get_tracer(__name__)
        return self._tracer

    # ==================== Segment ====================

    def begin_segment(
        self,
        name: str,
        parent_context: Context | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> Segment | None:
        """
        开始 Segment 并设为当前上下文

        Args:
            name: Segment 名称
            parent_context: 上游传播过来的 OpenTelemetry Context
            attributes: 初始 Span 属性

        Returns:
            Segment，未启用时返回 None
        """
        if not self.enabled:
            return None

        span = self.tracer.start_span(
            name, context=parent_context, kind=SpanKind.SERVER, attributes=attributes
        )
        token = otel_context.attach(trace.set_span_in_context(span, parent_context))

        segment = Segment(name, span, token)
        segment._previous_segment = self._segment_var.get()
        segment._previous_stack = self._stack_var.get()

        self._segment_var.set(segment)
        self._stack_var.set(())

        logger.debug("Segment started: %s (trace_id=%s)", name, segment.trace_id)
        return segment

    def end_segment(self, segment: Segment | None) -> None:
        """
        结束 Segment 并恢复外层上下文（幂等，None 为空操作）

        仍未结束的 Subsegment 会被一并结束。
        """
        if segment is None:
            return
        if segment.closed:
            logger.debug("Segment already closed: %s", segment.name)
            return

        leaked = [s for s in self._stack_var.get() if s.segment is segment]
        for subsegment in reversed(leaked):
            if subsegment.closed:
                subsegment.detach()
                continue
            logger.warning(
                "Closing subsegment %s left open in segment %s", subsegment.name, segment.name
            )
            subsegment.close()

        segment.close()

        if self._segment_var.get() is segment:
            self._segment_var.set(segment._previous_segment)
            self._stack_var.set(segment._previous_stack)

        logger.debug(
            "Segment ended: %s (%.3fs, subsegments=%d)",
            segment.name,
            segment.end_time - segment.start_time,
            len(segment.subsegments),
        )

    def current_segment(self) -> Segment | None:
        """返回当前 Segment；没有时返回 None"""
        segment = self._segment_var.get()
        if segment is None or segment.closed:
            return None
        return segment

    def get_current_segment(self) -> Segment:
        """
        返回当前 Segment

        Raises:
            SegmentNotFoundError: 当前上下文中没有活动的 Segment
        """
        segment = self.current_segment()
        if segment is None:
            raise SegmentNotFoundError("No segment is active in the current context")
        return segment

    # ==================== Subsegment ====================

    def begin_subsegment(self, name: str) -> Subsegment | None:
        """
        在当前 Segment 下开始 Subsegment

        Args:
            name: Subsegment 名称

        Returns:
            Subsegment；未启用或缺少 Segment 时返回 None
        """
        if not self.enabled:
            return None

        segment = self.current_segment()
        if segment is None:
            self._handle_context_missing(f"cannot begin subsegment {name!r}")
            return None

        stack = self._stack_var.get()
        parent: TraceEntity = self.current_subsegment() or segment

        span = self.tracer.start_span(name, kind=SpanKind.INTERNAL)
        token = otel_context.attach(trace.set_span_in_context(span))

        subsegment = Subsegment(name, span, segment=segment, parent=parent, token=token)
        segment.subsegments.append(subsegment)
        self._stack_var.set(stack + (subsegment,))
        return subsegment

    def end_subsegment(self, subsegment: Subsegment | None) -> None:
        """
        结束 Subsegment（幂等，None 为空操作）

        OpenTelemetry 上下文必须按后进先出的顺序恢复：乱序结束的 Subsegment
        只结束 Span，留在栈中，等到内层全部结束后再恢复它的上下文。

        Args:
            subsegment: begin_subsegment 返回的句柄
        """
        if subsegment is None:
            logger.debug("No subsegment to end")
            return
        if subsegment.closed:
            logger.debug("Subsegment already closed: %s", subsegment.name)
            return

        stack = self._stack_var.get()
        if not any(s is subsegment for s in stack):
            subsegment.close()
            return

        if stack[-1] is not subsegment:
            logger.warning("Subsegment %s closed out of order", subsegment.name)
            subsegment.end()
            return

        subsegment.close()
        stack = stack[:-1]
        while stack and stack[-1].closed:
            stack[-1].detach()
            stack = stack[:-1]
        self._stack_var.set(stack)

    def current_subsegment(self) -> Subsegment | None:
        """返回最内层未结束的 Subsegment；没有时返回 None"""
        for subsegment in reversed(self._stack_var.get()):
            if not subsegment.closed:
                return subsegment
        return None

    def get_current_subsegment(self) -> Subsegment:
        """
        返回最内层的 Subsegment

        Raises:
            SubsegmentNotFoundError: 当前上下文中没有活动的 Subsegment
        """
        subsegment = self.current_subsegment()
        if subsegment is None:
            raise SubsegmentNotFoundError("No subsegment is active in the current context")
        return subsegment

    def current_entity(self) -> TraceEntity | None:
        """返回最内层的实体（Subsegment 优先）"""
        return self.current_subsegment() or self.current_segment()

    # ==================== 便捷操作 ====================

    def put_metadata(self, key: str, value: Any, namespace: str = DEFAULT_NAMESPACE) -> bool:
        """向最内层实体添加元数据，返回是否成功"""
        entity = self.current_entity()
        if entity is None:
            self._handle_context_missing(f"cannot put metadata {key!r}")
            return False
        entity.put_metadata(key, value, namespace=namespace)
        return True

    @contextmanager
    def in_segment(
        self,
        name: str,
        parent_context: Context | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> Iterator[Segment | None]:
        """上下文管理器形式的 Segment"""
        segment = self.begin_segment(name, parent_context=parent_context, attributes=attributes)
        try:
            yield segment
        except Exception as exc:
            if segment is not None:
                segment.add_exception(exc)
            raise
        finally:
            self.end_segment(segment)

    @contextmanager
    def in_subsegment(self, name: str) -> Iterator[Subsegment | None]:
        """上下文管理器形式的 Subsegment"""
        subsegment = self.begin_subsegment(name)
        try:
            yield subsegment
        except Exception as exc:
            if subsegment is not None:
                subsegment.add_exception(exc)
            raise
        finally:
            self.end_subsegment(subsegment)

    def _handle_context_missing(self, message: str) -> None:
        if self.context_missing is ContextMissingStrategy.LOG_ERROR:
            logger.error("Trace context missing: %s", message)
