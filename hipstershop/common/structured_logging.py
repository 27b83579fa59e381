"""
统一的结构化日志配置

日志与追踪关联：
- 每条日志带上当前 Span 的 trace_id / span_id（Segment 或最内层 Subsegment）
- 请求ID由 SegmentMiddleware 在请求开始时设置、结束时恢复
- staging / production 输出 JSON，开发环境输出可读文本
"""

import json
import logging
import os
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# 文本格式中缺失字段的占位符
NO_VALUE = "-"

_CORRELATION_FIELDS = ("request_id", "trace_id", "span_id")

# LogRecord 自带的属性，不作为额外字段输出
_RESERVED_ATTRS = (
    set(vars(logging.LogRecord("", 0, "", 0, "", None, None)))
    | {"message", "asctime"}
    | set(_CORRELATION_FIELDS)
)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(trace_id)s/%(span_id)s] [%(request_id)s] - %(message)s"


def correlation_ids() -> dict[str, str]:
    """
    当前上下文的关联字段

    Returns:
        包含 request_id / trace_id / span_id 的字典，缺失的字段不出现
    """
    ids: dict[str, str] = {}
    if request_id := request_id_var.get():
        ids["request_id"] = request_id

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        ids["trace_id"] = format(span_context.trace_id, "032x")
        ids["span_id"] = format(span_context.span_id, "016x")
    return ids


class TraceContextFilter(logging.Filter):
    """把关联字段写入 LogRecord（文本格式使用）"""

    def filter(self, record: logging.LogRecord) -> bool:
        ids = correlation_ids()
        for field in _CORRELATION_FIELDS:
            setattr(record, field, ids.get(field, NO_VALUE))
        return True


class StructuredFormatter(logging.Formatter):
    """
    结构化 JSON 日志格式化器

    输出格式:
    {
        "timestamp": "2025-01-01T12:00:00.000Z",
        "level": "INFO",
        "logger": "hipstershop.common.trace_context",
        "message": "Segment started: eCommence",
        "service": "eCommence",
        "trace_id": "hex",
        "span_id": "hex",
        "request_id": "id",
        ...额外字段
    }
    """

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            **correlation_ids(),
        }

        # extra 参数传入的字段
        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.levelno == logging.DEBUG:
            log_data["source"] = f"{record.filename}:{record.lineno} {record.funcName}"

        if record.exc_info and record.exc_info[0] is not None:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(
    service_name: str,
    log_level: str | None = None,
    use_json: bool | None = None,
) -> None:
    """
    配置统一日志

    Args:
        service_name: 服务名称（通常为 Segment 名称）
        log_level: 日志级别，默认读取 LOG_LEVEL
        use_json: 是否使用 JSON 格式，默认按 ENVIRONMENT 判断
    """
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()

    if use_json is None:
        use_json = os.getenv("ENVIRONMENT", "development").lower() in ("staging", "production")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(TraceContextFilter())
    if use_json:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root_logger.setLevel(getattr(logging, log_level, logging.INFO))
    root_logger.addHandler(handler)

    # 第三方库
    for name in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.info(f"Logging configured: service={service_name}, level={log_level}, json={use_json}")


def set_request_id(request_id: str) -> Token:
    """设置当前请求ID，返回用于恢复的 Token"""
    return request_id_var.set(request_id)


def reset_request_id(token: Token) -> None:
    """恢复 set_request_id 之前的请求ID"""
    request_id_var.reset(token)


def get_request_id() -> str:
    """当前请求ID，未设置时返回空字符串"""
    return request_id_var.get()
