#!/usr/bin/env python3
"""
Storefront 追踪 Demo

演示前端服务如何在构造时装配调用追踪:
1. setup_service_tracing - 注册请求 Segment 中间件并创建 CallTracer
2. @xray_enabled + TracingAspect - 按服务策略织入组件
3. register_exception_handlers - 统一错误响应（附带 trace_id）

商品与购物车数据保存在内存中，仅用于演示。

运行:
    TRACE_POLICY=all CONSOLE_EXPORT=true python -m hipstershop.examples.storefront_demo
"""

import logging
import random
import threading
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from opentelemetry.sdk.trace import TracerProvider

from hipstershop.common import TracingSettings, setup_logging, setup_service_tracing, xray_enabled
from hipstershop.common.exception_handlers import register_exception_handlers
from hipstershop.common.exceptions import ResourceNotFoundError, ValidationError

logger = logging.getLogger(__name__)

PRODUCTS: dict[str, dict[str, Any]] = {
    "OLJCESPC7Z": {"id": "OLJCESPC7Z", "name": "Vintage Typewriter", "price": 67.99, "picture": "/static/img/products/typewriter.jpg"},
    "66VCHSJNUP": {"id": "66VCHSJNUP", "name": "Vintage Camera Lens", "price": 12.49, "picture": "/static/img/products/camera-lens.jpg"},
    "1YMWWN1N4O": {"id": "1YMWWN1N4O", "name": "Home Barista Kit", "price": 124.0, "picture": "/static/img/products/barista-kit.jpg"},
    "L9ECAV7KIM": {"id": "L9ECAV7KIM", "name": "Terrarium", "price": 36.45, "picture": "/static/img/products/terrarium.jpg"},
}


@xray_enabled
class ProductDAO:
    """商品访问（替代远程 productservice）"""

    def __init__(self, catalog: dict[str, dict[str, Any]] | None = None):
        self._catalog = dict(catalog or PRODUCTS)

    def get_product_list(self) -> list[dict[str, Any]]:
        return list(self._catalog.values())

    def get_product_by_id(self, product_id: str) -> dict[str, Any]:
        try:
            return self._catalog[product_id]
        except KeyError:
            raise ResourceNotFoundError(
                f"Product {product_id} not found", details={"product_id": product_id}
            ) from None


@xray_enabled
class CartDAO:
    """购物车访问（替代远程 cartservice）"""

    def __init__(self):
        self._carts: dict[str, dict[str, int]] = {}
        self._lock = threading.Lock()

    def view_cart(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            items = dict(self._carts.get(user_id, {}))
        return [{"product_id": pid, "quantity": qty} for pid, qty in items.items()]

    def add_to_cart(self, user_id: str, product_id: str, quantity: int) -> None:
        if quantity <= 0:
            raise ValidationError("quantity must be positive", details={"quantity": quantity})
        with self._lock:
            cart = self._carts.setdefault(user_id, {})
            cart[product_id] = cart.get(product_id, 0) + quantity

    def empty_cart(self, user_id: str) -> None:
        with self._lock:
            self._carts.pop(user_id, None)


@xray_enabled
class AppController:
    """前端控制器"""

    def __init__(
        self,
        product_dao: ProductDAO,
        cart_dao: CartDAO,
        user_id: str = "Test User",
        rng: random.Random | None = None,
    ):
        self.product_dao = product_dao
        self.cart_dao = cart_dao
        self.user_id = user_id
        self.rng = rng or random.Random()

    def index(self) -> dict[str, Any]:
        return {
            "products": self.product_dao.get_product_list(),
            "cart_size": len(self.cart_dao.view_cart(self.user_id)),
        }

    def product(self, product_id: str) -> dict[str, Any]:
        return {"product": self.product_dao.get_product_by_id(product_id)}

    def view_cart(self) -> dict[str, Any]:
        items = []
        for item in self.cart_dao.view_cart(self.user_id):
            product = self.product_dao.get_product_by_id(item["product_id"])
            items.append(
                {
                    **item,
                    "product_name": product["name"],
                    "price": product["price"],
                    "product_picture": product["picture"],
                }
            )
        return {"items": items}

    def add_to_cart(self, product_id: str, quantity: int) -> dict[str, Any]:
        self.product_dao.get_product_by_id(product_id)
        self.cart_dao.add_to_cart(self.user_id, product_id, quantity)
        return self.view_cart()

    def empty_cart(self) -> dict[str, Any]:
        self.cart_dao.empty_cart(self.user_id)
        return {"items": []}

    def checkout(self) -> dict[str, Any]:
        if self.rng.random() < 0.5:
            raise RuntimeError("checkout failed")
        return {"message": "not support yet"}

    def exception(self) -> dict[str, Any]:
        raise RuntimeError("boom")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：关闭时刷新追踪导出器"""
    yield
    app.state.tracing.shutdown()


def create_app(
    settings: TracingSettings | None = None,
    tracer_provider: TracerProvider | None = None,
    rng: random.Random | None = None,
) -> FastAPI:
    """
    创建前端应用

    Args:
        settings: 追踪配置（默认从环境变量加载）
        tracer_provider: 指定的 TracerProvider（测试时注入内存导出器）
        rng: checkout 使用的随机数生成器

    Returns:
        FastAPI 应用
    """
    settings = settings or TracingSettings()

    app = FastAPI(title="Storefront Demo", version="1.0.0", lifespan=lifespan)
    tracing = setup_service_tracing(app, settings, tracer_provider=tracer_provider)
    register_exception_handlers(app)

    product_dao, cart_dao = tracing.weave(ProductDAO(), CartDAO())
    controller = tracing.aspect.weave(AppController(product_dao, cart_dao, rng=rng))

    app.state.tracing = tracing
    app.state.controller = controller

    @app.get("/")
    async def index():
        return controller.index()

    @app.get("/product/{product_id}")
    async def product(product_id: str):
        return controller.product(product_id)

    @app.get("/cart")
    async def view_cart():
        return controller.view_cart()

    @app.post("/cart")
    async def add_to_cart(product_id: str, quantity: int = 1):
        return controller.add_to_cart(product_id, quantity)

    @app.post("/cart/empty")
    async def empty_cart():
        return controller.empty_cart()

    @app.get("/checkout")
    async def checkout():
        return controller.checkout()

    @app.get("/exception")
    async def exception():
        return controller.exception()

    @app.get("/health")
    async def health():
        return {"status": "healthy", "segment": settings.segment_name}

    return app


if __name__ == "__main__":
    import uvicorn

    demo_settings = TracingSettings()
    setup_logging(demo_settings.segment_name, demo_settings.log_level, demo_settings.use_json_logs())

    logger.info(f"Starting storefront demo on {demo_settings.host}:{demo_settings.port}")

    uvicorn.run(create_app(demo_settings), host=demo_settings.host, port=demo_settings.port)
