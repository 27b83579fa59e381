"""
统一配置管理基类 - 所有服务配置继承此基类
"""

import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ServiceConfigBase(BaseSettings):
    """服务配置基类 - 包含所有服务通用的配置项"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== 服务基础配置 =====
    service_name: str = Field(default="eCommence", description="服务名称")
    host: str = Field(default="0.0.0.0", description="监听地址")
    port: int = Field(default=8080, ge=1, le=65535, description="监听端口")

    # ===== 日志配置 =====
    log_level: str = Field(default="INFO", description="日志级别")
    log_json: bool | None = Field(default=None, description="是否输出 JSON 日志（默认按环境判断）")

    # ===== 可观测性配置 =====
    metrics_enabled: bool = Field(default=True, description="是否暴露 Prometheus 指标")

    # ===== 开发模式 =====
    debug: bool = Field(default=False, description="调试模式")
    environment: str = Field(default="development", description="运行环境: development|staging|production")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        v_upper = v.upper()
        if v_upper not in _LOG_LEVELS:
            raise ValueError(f"log_level must be one of {list(_LOG_LEVELS)}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """验证环境"""
        allowed = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v_lower

    def is_production(self) -> bool:
        """是否为生产环境"""
        return self.environment == "production"

    def is_development(self) -> bool:
        """是否为开发环境"""
        return self.environment == "development"

    def use_json_logs(self) -> bool:
        """未显式配置时，staging / production 使用 JSON 日志"""
        if self.log_json is not None:
            return self.log_json
        return self.environment in ("staging", "production")


class TracingSettings(ServiceConfigBase):
    """追踪配置 - 决定 Segment 命名、拦截策略和导出方式"""

    # ===== 开关 =====
    tracing_enabled: bool = Field(default=True, description="是否启用追踪")

    # ===== Segment 命名 =====
    fixed_segment_name: str | None = Field(
        default=None, description="固定的 Segment 名称（默认由 service_name 推导）"
    )
    versioned_segment_name: bool = Field(
        default=False, description="Segment 名称是否追加 -v<VERSION> 后缀"
    )
    version: str | None = Field(default=None, description="部署版本，来自 VERSION 环境变量")
    dns_naming: str = Field(
        default="", description="动态命名的主机通配符（如 *.example.com），为空则使用固定命名"
    )

    # ===== 拦截策略 =====
    trace_policy: str = Field(default="all", description="拦截策略: all|controllers")
    context_missing: str = Field(
        default="log_error", description="缺少 Segment 时的处理策略: log_error|ignore"
    )

    # ===== 导出配置 =====
    otlp_endpoint: str | None = Field(default=None, description="OTLP gRPC 导出端点")
    sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0, description="采样率 (0.0-1.0)")
    console_export: bool = Field(default=False, description="是否输出 Span 到控制台（调试用）")

    @field_validator("trace_policy")
    @classmethod
    def validate_trace_policy(cls, v: str) -> str:
        """验证拦截策略"""
        allowed = ["all", "controllers"]
        v_lower = v.strip().lower()
        if v_lower not in allowed:
            raise ValueError(f"trace_policy must be one of {allowed}")
        return v_lower

    @field_validator("context_missing")
    @classmethod
    def validate_context_missing(cls, v: str) -> str:
        """验证缺失上下文策略"""
        allowed = ["log_error", "ignore"]
        v_lower = v.strip().lower()
        if v_lower not in allowed:
            raise ValueError(f"context_missing must be one of {allowed}")
        return v_lower

    @property
    def segment_name(self) -> str:
        """
        服务 Segment 名称

        优先使用 fixed_segment_name；否则使用 service_name，
        开启 versioned_segment_name 时追加版本后缀（未知版本记为 Unknown）。
        """
        if self.fixed_segment_name:
            return self.fixed_segment_name
        if self.versioned_segment_name:
            return f"{self.service_name}-v{self.version or 'Unknown'}"
        return self.service_name


def load_tracing_settings(**overrides) -> TracingSettings:
    """
    从环境变量加载追踪配置

    Args:
        **overrides: 覆盖的配置项

    Returns:
        TracingSettings 实例
    """
    settings = TracingSettings(**overrides)
    logger.debug(
        "Tracing settings loaded: segment=%s, policy=%s, enabled=%s",
        settings.segment_name,
        settings.trace_policy,
        settings.tracing_enabled,
    )
    return settings
