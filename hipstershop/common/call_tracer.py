"""
Call Tracer - 调用追踪拦截器

把任意一次调用包裹在一个 Subsegment 中：

1. 以操作名开始 Subsegment（嵌套在当前 Segment 下）
2. Subsegment 创建成功时，计算并附加元数据
3. 执行原始调用，原样返回结果
4. 调用抛出异常时，把异常记录到当前 Segment，然后原样重新抛出
5. 无论哪条路径，最后都结束 Subsegment，且只结束一次

生成器与异步生成器函数的 Subsegment 覆盖整个迭代过程，而不是只覆盖创建生成器的调用。

追踪是尽力而为的：Subsegment 创建失败、元数据计算失败、结束失败都只记录日志，
不会改变被包裹调用的结果。

使用示例：
    recorder = TraceRecorder()
    tracer = CallTracer(recorder)

    @tracer
    def get_product(product_id: str) -> Product:
        ...

    @tracer(name="listProducts")
    async def list_products() -> list[Product]:
        ...
"""

import functools
import inspect
import logging
import time
from collections.abc import AsyncGenerator, Callable, Generator, Mapping
from dataclasses import dataclass, field
from typing import Any

from . import metrics
from .trace_context import Subsegment, TraceRecorder

logger = logging.getLogger(__name__)

TRACED_MARKER = "__xray_traced__"

Metadata = Mapping[str, Mapping[str, Any]]


@dataclass
class Invocation:
    """一次被拦截的调用"""

    name: str
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    target: Any = None

    def proceed(self) -> Any:
        """执行原始调用"""
        return self.func(*self.args, **self.kwargs)

    @property
    def target_class_name(self) -> str:
        """被调用对象的类名；普通函数返回所在模块名"""
        if self.target is not None:
            return type(self.target).__name__

        func = inspect.unwrap(self.func)
        qualname = getattr(func, "__qualname__", "")
        if "." in qualname and "<locals>" not in qualname:
            return qualname.rsplit(".", 1)[0]
        return getattr(func, "__module__", None) or "<unknown>"


MetadataProvider = Callable[[Invocation, Subsegment], Metadata]


def class_info_metadata(invocation: Invocation, subsegment: Subsegment) -> Metadata:
    """默认元数据：{"ClassInfo": {"Class": <类名>}}"""
    return {"ClassInfo": {"Class": invocation.target_class_name}}


class CallTracer:
    """
    调用追踪器

    Args:
        recorder: 追踪记录器
        metadata_provider: 元数据计算函数
        metrics_enabled: 是否记录 Prometheus 指标
    """

    def __init__(
        self,
        recorder: TraceRecorder,
        metadata_provider: MetadataProvider = class_info_metadata,
        metrics_enabled: bool = True,
    ):
        self.recorder = recorder
        self.metadata_provider = metadata_provider
        self.metrics_enabled = metrics_enabled

    def trace_call(self, invocation: Invocation) -> Any:
        """追踪一次同步调用"""
        start_time = time.perf_counter()
        subsegment = self._begin(invocation)
        outcome = "success"
        try:
            return invocation.proceed()
        except Exception as exc:
            outcome = "error"
            self._record_exception(exc, subsegment)
            raise
        finally:
            self._finish(invocation, subsegment, outcome, start_time)

    async def trace_call_async(self, invocation: Invocation) -> Any:
        """追踪一次异步调用（在调用方任务内开始和结束 Subsegment）"""
        start_time = time.perf_counter()
        subsegment = self._begin(invocation)
        outcome = "success"
        try:
            return await invocation.proceed()
        except Exception as exc:
            outcome = "error"
            self._record_exception(exc, subsegment)
            raise
        finally:
            self._finish(invocation, subsegment, outcome, start_time)

    def trace_generator(self, invocation: Invocation) -> Generator[Any, Any, Any]:
        """
        追踪一个生成器调用

        Subsegment 在首次迭代时开始，覆盖整个迭代过程，
        在耗尽、抛出异常或提前 close() 时结束。
        """
        start_time = time.perf_counter()
        subsegment = self._begin(invocation)
        outcome = "success"
        try:
            return (yield from invocation.proceed())
        except Exception as exc:
            outcome = "error"
            self._record_exception(exc, subsegment)
            raise
        finally:
            self._finish(invocation, subsegment, outcome, start_time)

    async def trace_async_generator(self, invocation: Invocation) -> AsyncGenerator[Any, None]:
        """追踪一个异步生成器调用，Subsegment 覆盖整个迭代过程"""
        start_time = time.perf_counter()
        subsegment = self._begin(invocation)
        outcome = "success"
        try:
            async for item in invocation.proceed():
                yield item
        except Exception as exc:
            outcome = "error"
            self._record_exception(exc, subsegment)
            raise
        finally:
            self._finish(invocation, subsegment, outcome, start_time)

    def wrap(
        self, func: Callable[..., Any], name: str | None = None, target: Any = None
    ) -> Callable[..., Any]:
        """
        返回被追踪的包装函数

        Args:
            func: 原始函数或绑定方法
            name: 操作名（默认使用函数名）
            target: 被调用对象（用于元数据）

        Returns:
            包装函数，按原函数类型（普通、协程、生成器、异步生成器）追踪
        """
        return _traced_wrapper(lambda: self, func, name or func.__name__, target)

    def __call__(self, func: Callable[..., Any] | None = None, *, name: str | None = None):
        """装饰器：@tracer 或 @tracer(name=...)"""
        if func is None:
            return functools.partial(self.wrap, name=name)
        return self.wrap(func, name=name)

    def count_failure(self, stage: str) -> None:
        """记录追踪自身失败（begin/metadata/end/weave）"""
        if self.metrics_enabled:
            metrics.record_tracing_failure(stage)

    def _begin(self, invocation: Invocation) -> Subsegment | None:
        try:
            subsegment = self.recorder.begin_subsegment(invocation.name)
        except Exception as e:
            logger.warning(f"Failed to begin subsegment {invocation.name}: {e}")
            self.count_failure("begin")
            return None

        if subsegment is not None:
            try:
                subsegment.set_metadata(self.metadata_provider(invocation, subsegment))
            except Exception as e:
                logger.warning(f"Failed to attach metadata to {invocation.name}: {e}")
                self.count_failure("metadata")

        return subsegment

    def _record_exception(self, exc: Exception, subsegment: Subsegment | None) -> None:
        try:
            segment = self.recorder.current_segment()
            if segment is not None:
                segment.add_exception(exc)
            if subsegment is not None:
                subsegment.fault = True
        except Exception as e:
            logger.warning(f"Failed to record exception on segment: {e}")

    def _finish(
        self,
        invocation: Invocation,
        subsegment: Subsegment | None,
        outcome: str,
        start_time: float,
    ) -> None:
        try:
            if self.metrics_enabled:
                duration_ms = (time.perf_counter() - start_time) * 1000
                metrics.record_traced_call(invocation.name, outcome, duration_ms)
        except Exception as e:
            logger.warning(f"Failed to record metrics for {invocation.name}: {e}")

        # 结束 Subsegment 必须是最后一步
        try:
            self.recorder.end_subsegment(subsegment)
        except Exception as e:
            logger.warning(f"Failed to end subsegment {invocation.name}: {e}")
            self.count_failure("end")


def _traced_wrapper(
    resolve_tracer: Callable[[], CallTracer],
    func: Callable[..., Any],
    operation: str,
    target: Any = None,
) -> Callable[..., Any]:
    """
    按函数类型构造追踪包装

    resolve_tracer 在每次调用时执行，因此全局追踪器可以在装饰之后再设置。
    """

    def invocation(args, kwargs) -> Invocation:
        return Invocation(operation, func, args, kwargs, target)

    if inspect.isasyncgenfunction(func):

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return resolve_tracer().trace_async_generator(invocation(args, kwargs))

    elif inspect.isgeneratorfunction(func):

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return resolve_tracer().trace_generator(invocation(args, kwargs))

    elif inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await resolve_tracer().trace_call_async(invocation(args, kwargs))

    else:

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return resolve_tracer().trace_call(invocation(args, kwargs))

    setattr(wrapper, TRACED_MARKER, True)
    return wrapper


def is_traced(func: Callable[..., Any]) -> bool:
    """函数是否已被追踪包装"""
    return getattr(func, TRACED_MARKER, False)


# ==================== 全局追踪器 ====================

_call_tracer: CallTracer | None = None


def set_call_tracer(tracer: CallTracer | None) -> None:
    """设置全局 CallTracer（服务启动时调用）"""
    global _call_tracer
    _call_tracer = tracer


def get_call_tracer() -> CallTracer:
    """获取全局 CallTracer（未设置时使用默认 TraceRecorder 创建）"""
    global _call_tracer
    if _call_tracer is None:
        _call_tracer = CallTracer(TraceRecorder())
    return _call_tracer


def traced(name: str | None = None):
    """
    装饰器：使用全局 CallTracer 追踪函数

    全局追踪器在每次调用时解析，因此可以在 set_call_tracer 之前装饰。

    Usage:
        @traced()
        async def get_product_list():
            ...
    """

    def decorator(func):
        return _traced_wrapper(get_call_tracer, func, name or func.__name__)

    return decorator
