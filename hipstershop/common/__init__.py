"""
hipstershop/common - 所有 hipstershop 服务的公共追踪模块

这个包包含：
- 调用追踪拦截器 (call_tracer.py) - 每次调用一个 Subsegment
- 追踪上下文 (trace_context.py) - Segment / Subsegment 与任务级当前上下文
- 追踪选择 (trace_selection.py) - @xray_enabled 标记、拦截策略与织入
- 追踪传播 (trace_propagation.py) - 请求 Segment 中间件、出站 trace 头
- OpenTelemetry 装配 (telemetry.py)
- 统一配置基类 (config_base.py)
- 统一结构化日志 (structured_logging.py)
- 统一异常体系 (exceptions.py, exception_handlers.py)

使用示例：
    from hipstershop.common import TracingSettings, setup_service_tracing, xray_enabled

    tracing = setup_service_tracing(app, TracingSettings(service_name="eCommence"))
    controller = tracing.aspect.weave(AppController(product_dao, cart_dao))
"""

__version__ = "1.0.0"

from .call_tracer import (
    CallTracer,
    Invocation,
    class_info_metadata,
    get_call_tracer,
    set_call_tracer,
    traced,
)
from .config_base import ServiceConfigBase, TracingSettings, load_tracing_settings
from .exceptions import (
    HipsterShopError,
    SegmentNotFoundError,
    SubsegmentNotFoundError,
    TracingError,
)
from .structured_logging import (
    correlation_ids,
    get_request_id,
    reset_request_id,
    set_request_id,
    setup_logging,
)
from .telemetry import ServiceTracing, init_tracing, setup_service_tracing
from .trace_context import (
    ContextMissingStrategy,
    Segment,
    Subsegment,
    TraceRecorder,
)
from .trace_propagation import (
    DynamicSegmentNamingStrategy,
    FixedSegmentNamingStrategy,
    SegmentMiddleware,
    TracedTransport,
    inject_trace_headers,
    segment_naming_strategy,
)
from .trace_selection import (
    TracingAspect,
    TracingPolicy,
    controller_beans,
    within_xray_enabled,
    xray_enabled,
)

__all__ = [
    # 调用追踪
    "CallTracer",
    "Invocation",
    "class_info_metadata",
    "traced",
    "get_call_tracer",
    "set_call_tracer",
    # 追踪上下文
    "TraceRecorder",
    "Segment",
    "Subsegment",
    "ContextMissingStrategy",
    # 选择与织入
    "xray_enabled",
    "within_xray_enabled",
    "controller_beans",
    "TracingPolicy",
    "TracingAspect",
    # 传播
    "SegmentMiddleware",
    "FixedSegmentNamingStrategy",
    "DynamicSegmentNamingStrategy",
    "segment_naming_strategy",
    "inject_trace_headers",
    "TracedTransport",
    # 装配
    "init_tracing",
    "setup_service_tracing",
    "ServiceTracing",
    # 配置
    "ServiceConfigBase",
    "TracingSettings",
    "load_tracing_settings",
    # 日志
    "setup_logging",
    "set_request_id",
    "get_request_id",
    "reset_request_id",
    "correlation_ids",
    # 异常
    "HipsterShopError",
    "TracingError",
    "SegmentNotFoundError",
    "SubsegmentNotFoundError",
]
