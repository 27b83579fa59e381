"""
统一的 FastAPI 异常处理器

HipsterShopError 在请求 Segment 内处理，响应体附带 trace_id / request_id，
便于在追踪后端定位对应的 Segment；其余异常由最外层的 500 处理器兜底。
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .exceptions import HipsterShopError, get_http_status_code
from .structured_logging import correlation_ids

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """
    注册全局异常处理器到 FastAPI 应用

    Args:
        app: FastAPI 应用实例
    """

    @app.exception_handler(HipsterShopError)
    async def hipstershop_exception_handler(request: Request, exc: HipsterShopError):
        status_code = get_http_status_code(exc)
        logger.log(
            logging.ERROR if status_code >= 500 else logging.WARNING,
            f"Business exception: {exc}",
            extra={"error_code": exc.code, "path": request.url.path, "status_code": status_code},
        )

        ids = correlation_ids()
        ids.pop("span_id", None)
        return JSONResponse(
            status_code=status_code,
            content={**exc.to_dict(), **ids},
            headers={"X-Error-Code": exc.code},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        # 在 ServerErrorMiddleware 中执行，此时请求 Segment 已结束
        logger.exception(
            f"Unhandled exception: {exc}",
            extra={"path": request.url.path, "exception_type": type(exc).__name__},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred. Please contact support if the problem persists.",
                "path": request.url.path,
            },
        )

    logger.info("Exception handlers registered")
