"""
追踪选择与织入单元测试
"""

import logging
from dataclasses import dataclass

import pytest
from prometheus_client import REGISTRY

from hipstershop.common.call_tracer import CallTracer, is_traced
from hipstershop.common.trace_selection import (
    TracingAspect,
    TracingPolicy,
    controller_beans,
    is_xray_enabled,
    traceable_methods,
    within_xray_enabled,
    xray_enabled,
)


class BaseDAO:
    def ping(self):
        return "pong"


@xray_enabled
class ProductDAO(BaseDAO):
    def get_product_list(self):
        return ["p1", "p2"]

    def _load(self):
        return "private"

    @staticmethod
    def build_key(product_id):
        return f"product:{product_id}"

    @classmethod
    def create(cls):
        return cls()

    @property
    def size(self):
        return 2


@xray_enabled
class AppController:
    def __init__(self, product_dao):
        self.product_dao = product_dao

    def index(self):
        return self.product_dao.get_product_list()


class PlainController:
    def index(self):
        return "untagged"


@pytest.fixture
def aspect(fake_recorder):
    return TracingAspect(CallTracer(fake_recorder, metrics_enabled=False))


class TestPointcuts:
    """Pointcut 测试"""

    def test_xray_enabled_marker(self):
        """测试类标记"""
        assert is_xray_enabled(ProductDAO)
        assert not is_xray_enabled(BaseDAO)
        assert not is_xray_enabled(PlainController)

    def test_within_xray_enabled(self):
        """测试所有带标记的组件"""
        assert within_xray_enabled(ProductDAO)
        assert within_xray_enabled(AppController)
        assert not within_xray_enabled(PlainController)

    def test_controller_beans(self):
        """测试仅控制器"""
        assert controller_beans(AppController)
        assert not controller_beans(ProductDAO)
        assert not controller_beans(PlainController)


class TestTracingPolicy:
    """拦截策略测试"""

    def test_from_name(self):
        """测试解析策略名"""
        assert TracingPolicy.from_name("all") is TracingPolicy.ALL_TAGGED
        assert TracingPolicy.from_name(" Controllers ") is TracingPolicy.CONTROLLERS_ONLY

    def test_invalid_name(self):
        """测试无效策略名"""
        with pytest.raises(ValueError):
            TracingPolicy.from_name("everything")

    def test_pointcut(self):
        """测试策略对应的 Pointcut"""
        assert TracingPolicy.ALL_TAGGED.pointcut is within_xray_enabled
        assert TracingPolicy.CONTROLLERS_ONLY.pointcut is controller_beans


class TestTraceableMethods:
    """可追踪方法测试"""

    def test_public_instance_methods_only(self):
        """测试只包含公开实例方法（含继承）"""
        assert sorted(traceable_methods(ProductDAO)) == ["get_product_list", "ping"]


class TestTracingAspect:
    """织入测试"""

    def test_weave_wraps_public_methods(self, aspect, fake_recorder):
        """测试织入后公开方法被追踪"""
        dao = aspect.weave(ProductDAO())

        assert is_traced(dao.get_product_list)
        assert is_traced(dao.ping)
        assert not is_traced(dao._load)
        assert dao.build_key("p1") == "product:p1"
        assert dao.size == 2

        assert dao.get_product_list() == ["p1", "p2"]
        assert fake_recorder.events[0] == "begin:get_product_list"
        assert fake_recorder.opened[0].metadata == {"ClassInfo": {"Class": "ProductDAO"}}

    def test_weave_is_per_instance(self, aspect):
        """测试织入只影响实例，不修改类"""
        woven = aspect.weave(ProductDAO())
        plain = ProductDAO()

        assert is_traced(woven.get_product_list)
        assert not is_traced(plain.get_product_list)

    def test_weave_is_idempotent(self, aspect, fake_recorder):
        """测试重复织入不会重复包装"""
        dao = ProductDAO()
        aspect.weave(dao)
        first = dao.get_product_list
        aspect.weave(dao)

        assert dao.get_product_list is first
        dao.get_product_list()
        assert fake_recorder.events.count("begin:get_product_list") == 1

    def test_untagged_component_unchanged(self, aspect):
        """测试未标记的组件原样返回"""
        controller = PlainController()
        assert aspect.weave(controller) is controller
        assert not is_traced(controller.index)

    def test_controllers_only_policy(self, fake_recorder):
        """测试仅控制器策略"""
        aspect = TracingAspect.for_policy(
            CallTracer(fake_recorder, metrics_enabled=False), "controllers"
        )
        dao = aspect.weave(ProductDAO())
        controller = aspect.weave(AppController(dao))

        assert not is_traced(dao.get_product_list)
        assert is_traced(controller.index)

        controller.index()
        assert [s.name for s in fake_recorder.opened] == ["index"]

    def test_all_policy_nests_calls(self, aspect, fake_recorder):
        """测试所有组件策略下内部调用同样被追踪"""
        dao, plain = aspect.weave_all(ProductDAO(), PlainController())
        controller = aspect.weave(AppController(dao))

        assert not is_traced(plain.index)

        assert controller.index() == ["p1", "p2"]
        assert fake_recorder.events == [
            "begin:index",
            "metadata:index",
            "begin:get_product_list",
            "metadata:get_product_list",
            "end:get_product_list",
            "end:index",
        ]

    def test_matches_accepts_class_or_instance(self, aspect):
        """测试 matches 接受类或实例"""
        assert aspect.matches(ProductDAO)
        assert aspect.matches(ProductDAO())
        assert not aspect.matches(PlainController)


@xray_enabled
class SlotDAO:
    __slots__ = ()

    def get_cart(self, user_id):
        return {"user": user_id}


@xray_enabled
@dataclass(frozen=True)
class FrozenDAO:
    table: str = "products"

    def count(self):
        return 3


class TestWeaveReadOnlyComponents:
    """不可设置属性的组件织入测试"""

    def test_slots_component_left_untraced(self, aspect, fake_recorder, caplog):
        """测试 __slots__ 组件织入失败时记录警告并保持可用"""
        dao = SlotDAO()

        with caplog.at_level(logging.WARNING):
            assert aspect.weave(dao) is dao

        assert "Cannot weave tracing into SlotDAO.get_cart" in caplog.text
        assert not is_traced(dao.get_cart)
        assert dao.get_cart("u1") == {"user": "u1"}
        assert fake_recorder.events == []

    def test_frozen_dataclass_left_untraced(self, aspect, caplog):
        """测试 frozen dataclass 组件织入失败时保持可用"""
        dao = FrozenDAO()

        with caplog.at_level(logging.WARNING):
            assert aspect.weave(dao) is dao

        assert "FrozenDAO.count" in caplog.text
        assert dao.count() == 3

    def test_weave_failure_counted(self, fake_recorder):
        """测试织入失败计入追踪失败指标"""
        aspect = TracingAspect(CallTracer(fake_recorder, metrics_enabled=True))
        labels = {"stage": "weave"}
        before = REGISTRY.get_sample_value("hipstershop_tracing_failures_total", labels) or 0

        aspect.weave_all(SlotDAO(), ProductDAO())

        after = REGISTRY.get_sample_value("hipstershop_tracing_failures_total", labels)
        assert after == before + 1
