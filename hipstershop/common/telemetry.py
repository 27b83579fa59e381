"""
OpenTelemetry 追踪初始化

为所有服务提供统一的追踪装配：
- init_tracing: 创建 TracerProvider（OTLP / 控制台导出、采样）
- setup_service_tracing: 在服务构造时装配 TraceRecorder、CallTracer、
  TracingAspect 与 SegmentMiddleware
"""

import logging
from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from .call_tracer import CallTracer, set_call_tracer
from .config_base import TracingSettings
from .trace_context import TraceRecorder
from .trace_propagation import SegmentMiddleware, segment_naming_strategy
from .trace_selection import TracingAspect

logger = logging.getLogger(__name__)


def init_tracing(settings: TracingSettings, set_global: bool = True) -> TracerProvider | None:
    """
    初始化 OpenTelemetry TracerProvider

    Args:
        settings: 追踪配置
        set_global: 是否设置为全局 TracerProvider

    Returns:
        TracerProvider，未启用时返回 None
    """
    if not settings.tracing_enabled:
        logger.info("Tracing is disabled")
        return None

    resource = Resource.create(
        {
            SERVICE_NAME: settings.segment_name,
            SERVICE_VERSION: settings.version or "unknown",
            "deployment.environment": settings.environment,
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.sampling_rate))

    if settings.otlp_endpoint:
        try:
            otlp_exporter = OTLPSpanExporter(
                endpoint=settings.otlp_endpoint,
                insecure=True,  # 生产环境应使用TLS
            )
            provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
            logger.info(f"OTLP exporter configured: {settings.otlp_endpoint}")
        except Exception as e:
            logger.warning(f"Failed to configure OTLP exporter: {e}")

    # 可选：添加控制台导出器（调试用）
    if settings.console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        logger.info("Console exporter enabled")

    if set_global:
        trace.set_tracer_provider(provider)

    logger.info(
        f"OpenTelemetry initialized: segment={settings.segment_name}, "
        f"sampling_rate={settings.sampling_rate}"
    )
    return provider


@dataclass
class ServiceTracing:
    """一个服务的追踪装配结果"""

    settings: TracingSettings
    recorder: TraceRecorder
    call_tracer: CallTracer
    aspect: TracingAspect
    provider: TracerProvider | None = None

    def weave(self, *components):
        """按服务策略为组件织入追踪，返回组件列表"""
        return self.aspect.weave_all(*components)

    def shutdown(self) -> None:
        """刷新并关闭导出器"""
        if self.provider is not None:
            self.provider.shutdown()
            logger.info("Tracer provider shut down")


def setup_service_tracing(
    app=None,
    settings: TracingSettings | None = None,
    tracer_provider: TracerProvider | None = None,
) -> ServiceTracing:
    """
    在服务构造时装配追踪

    Args:
        app: FastAPI 应用（为 None 时不注册 SegmentMiddleware）
        settings: 追踪配置（默认从环境变量加载）
        tracer_provider: 指定的 TracerProvider（默认调用 init_tracing 创建）

    Returns:
        ServiceTracing
    """
    settings = settings or TracingSettings()
    provider = tracer_provider or init_tracing(settings)
    tracer = provider.get_tracer("hipstershop") if provider is not None else None

    recorder = TraceRecorder.from_settings(settings, tracer=tracer)
    call_tracer = CallTracer(recorder, metrics_enabled=settings.metrics_enabled)
    aspect = TracingAspect.for_policy(call_tracer, settings.trace_policy)

    if app is not None:
        app.add_middleware(
            SegmentMiddleware,
            recorder=recorder,
            naming_strategy=segment_naming_strategy(settings),
            metrics_enabled=settings.metrics_enabled,
        )

    set_call_tracer(call_tracer)

    logger.info(
        f"Service tracing configured: segment={settings.segment_name}, "
        f"policy={settings.trace_policy}"
    )
    return ServiceTracing(
        settings=settings,
        recorder=recorder,
        call_tracer=call_tracer,
        aspect=aspect,
        provider=provider,
    )
