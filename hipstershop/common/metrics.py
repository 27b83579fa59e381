"""
Prometheus 指标定义

追踪组件自身的调用与请求指标
"""

from prometheus_client import Counter, Histogram

# ==================== 被拦截调用 ====================

traced_calls_total = Counter(
    "hipstershop_traced_calls_total",
    "被追踪的调用次数",
    ["operation", "outcome"],  # outcome: success/error
)

traced_call_latency = Histogram(
    "hipstershop_traced_call_latency_ms",
    "被追踪调用的延迟（毫秒）",
    ["operation"],
    buckets=[1, 5, 10, 50, 100, 200, 500, 1000, 5000],
)

# ==================== Segment ====================

segments_total = Counter(
    "hipstershop_segments_total",
    "请求 Segment 数量",
    ["segment", "status"],  # status: ok/error/fault
)

tracing_failures_total = Counter(
    "hipstershop_tracing_failures_total",
    "追踪基础设施自身的失败次数",
    ["stage"],  # stage: begin/metadata/end/weave
)


def record_traced_call(operation: str, outcome: str, duration_ms: float) -> None:
    """记录一次被追踪调用"""
    traced_calls_total.labels(operation=operation, outcome=outcome).inc()
    traced_call_latency.labels(operation=operation).observe(duration_ms)


def record_segment(segment_name: str, error: bool, fault: bool) -> None:
    """记录一次请求 Segment 的结果"""
    status = "fault" if fault else "error" if error else "ok"
    segments_total.labels(segment=segment_name, status=status).inc()


def record_tracing_failure(stage: str) -> None:
    """记录追踪自身失败"""
    tracing_failures_total.labels(stage=stage).inc()
