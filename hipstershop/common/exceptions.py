"""
统一异常体系

- HipsterShopError: 业务异常基类，携带错误代码与详情，可直接序列化为响应体
- TracingError: 严格模式下访问追踪上下文失败（get_current_segment 等）

注意：被 CallTracer 包裹的调用抛出的异常会原样传播，不会被转换为这里的类型。
"""

from typing import Any, Dict, Optional


class HipsterShopError(Exception):
    """
    基础异常类

    Args:
        message: 错误消息
        code: 错误代码（默认为类名）
        details: 额外的错误详情
        cause: 原始异常
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """转换为响应体"""
        result: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        if self.cause:
            result["cause"] = str(self.cause)
        return result

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (code={self.code}, details={self.details})"
        return f"{self.message} (code={self.code})"


class TracingError(HipsterShopError):
    """追踪上下文错误"""


class SegmentNotFoundError(TracingError):
    """当前上下文中没有活动的 Segment"""


class SubsegmentNotFoundError(TracingError):
    """当前上下文中没有活动的 Subsegment"""


class ResourceNotFoundError(HipsterShopError):
    """资源未找到（商品、购物车等）"""


class ValidationError(HipsterShopError):
    """输入验证错误"""


_STATUS_CODES = {
    ResourceNotFoundError: 404,
    ValidationError: 400,
}


def get_http_status_code(exc: HipsterShopError) -> int:
    """
    根据异常类型返回 HTTP 状态码

    未映射的类型（包括 TracingError）返回 500。
    """
    for exc_class, status_code in _STATUS_CODES.items():
        if isinstance(exc, exc_class):
            return status_code
    return 500
