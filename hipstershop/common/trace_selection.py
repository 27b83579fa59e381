"""
追踪选择 - 决定哪些组件的调用需要被 CallTracer 包裹

- @xray_enabled 把一个类标记为可追踪组件
- Pointcut 是作用在组件类上的谓词
- TracingPolicy 把配置中的策略名映射为 Pointcut：
    all          所有带标记的组件
    controllers  仅类名以 Controller 结尾的带标记组件
- TracingAspect 在组件构造完成后织入追踪包装

使用示例：
    @xray_enabled
    class ProductController:
        def get_product(self, product_id: str): ...

    aspect = TracingAspect(call_tracer, TracingPolicy.from_name("controllers").pointcut)
    controller = aspect.weave(ProductController())
"""

import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from .call_tracer import CallTracer, is_traced

logger = logging.getLogger(__name__)

XRAY_ENABLED_ATTR = "__xray_enabled__"
WOVEN_ATTR = "__xray_woven__"

Pointcut = Callable[[type], bool]

T = TypeVar("T")


def xray_enabled(cls: type[T]) -> type[T]:
    """类装饰器：标记为可追踪组件"""
    setattr(cls, XRAY_ENABLED_ATTR, True)
    return cls


def is_xray_enabled(cls: type) -> bool:
    """类（或其父类）是否带有追踪标记"""
    return bool(getattr(cls, XRAY_ENABLED_ATTR, False))


def within_xray_enabled(cls: type) -> bool:
    """Pointcut：所有带标记的组件"""
    return is_xray_enabled(cls)


def controller_beans(cls: type) -> bool:
    """Pointcut：带标记且类名以 Controller 结尾的组件"""
    return is_xray_enabled(cls) and cls.__name__.endswith("Controller")


class TracingPolicy(str, Enum):
    """拦截策略"""

    ALL_TAGGED = "all"
    CONTROLLERS_ONLY = "controllers"

    @classmethod
    def from_name(cls, name: str) -> "TracingPolicy":
        return cls(name.strip().lower())

    @property
    def pointcut(self) -> Pointcut:
        if self is TracingPolicy.CONTROLLERS_ONLY:
            return controller_beans
        return within_xray_enabled


def traceable_methods(cls: type) -> list[str]:
    """
    返回类上可被追踪的公开实例方法名

    排除以下划线开头的名称、staticmethod、classmethod 与 property，
    包括继承自父类（object 除外）的方法。
    """
    names: list[str] = []
    seen: set[str] = set()

    for klass in cls.__mro__:
        if klass is object:
            continue
        for name, attr in vars(klass).items():
            if name in seen:
                continue
            seen.add(name)
            if name.startswith("_"):
                continue
            if isinstance(attr, (staticmethod, classmethod, property)):
                continue
            if inspect.isfunction(attr):
                names.append(name)

    return names


class TracingAspect:
    """
    追踪切面

    Args:
        tracer: 调用追踪器
        pointcut: 组件选择谓词
    """

    def __init__(self, tracer: CallTracer, pointcut: Pointcut = within_xray_enabled):
        self.tracer = tracer
        self.pointcut = pointcut

    @classmethod
    def for_policy(cls, tracer: CallTracer, policy: TracingPolicy | str) -> "TracingAspect":
        """根据策略名创建切面"""
        if isinstance(policy, str):
            policy = TracingPolicy.from_name(policy)
        return cls(tracer, policy.pointcut)

    def matches(self, component: Any) -> bool:
        """组件是否被当前 Pointcut 选中"""
        cls = component if isinstance(component, type) else type(component)
        return self.pointcut(cls)

    def weave(self, component: T) -> T:
        """
        为组件实例织入追踪

        选中的组件的每个公开方法都在实例上替换为被追踪的绑定包装；
        未选中的组件原样返回。重复织入不会重复包装。
        实例不允许设置属性时（__slots__、frozen dataclass），该方法保持未追踪。

        Args:
            component: 组件实例

        Returns:
            同一个组件实例
        """
        if not self.matches(component):
            return component
        if getattr(component, WOVEN_ATTR, False):
            return component

        cls_name = type(component).__name__
        woven = []
        for name in traceable_methods(type(component)):
            method = getattr(component, name)
            if is_traced(method):
                continue
            try:
                setattr(component, name, self.tracer.wrap(method, name=name, target=component))
            except (AttributeError, TypeError) as e:
                logger.warning(f"Cannot weave tracing into {cls_name}.{name}: {e}")
                self.tracer.count_failure("weave")
                continue
            woven.append(name)

        try:
            setattr(component, WOVEN_ATTR, True)
        except (AttributeError, TypeError):
            logger.debug(f"Cannot mark {cls_name} as woven")

        logger.debug(f"Woven tracing into {cls_name}: {woven}")
        return component

    def weave_all(self, *components: Any) -> list[Any]:
        """批量织入"""
        return [self.weave(component) for component in components]
