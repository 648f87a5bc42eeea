"""
配置管理模块
使用 pydantic-settings 从环境变量加载配置
"""
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """应用配置类"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # 应用配置
    app_env: str = Field(default="development", description="应用环境")
    log_level: str = Field(default="INFO", description="日志级别")
    debug_model_logging: bool = Field(
        default=False,
        description="是否打印模型调用的请求/响应（已脱敏、超长字段截断）",
    )
    log_max_chars: int = Field(
        default=20000,
        description="日志中单个字符串字段的最大长度，超出部分截断",
    )
    cors_origins: List[str] = Field(
        default_factory=lambda: ["*"],
        description="允许跨域的来源列表",
    )

    # 数据库配置
    database_url: str = Field(..., description="PostgreSQL 数据库连接 URL")

    # Redis 配置
    redis_url: str = Field(..., description="Redis 连接 URL")

    # 代理接口鉴权（全局唯一 API Key）
    api_key: Optional[str] = Field(
        default=None,
        description="调用 /v1 与 /v1beta 接口所需的 API Key（未配置时所有代理请求返回 500）",
    )

    # 管理后台鉴权
    admin_username: str = Field(default="admin", description="管理员用户名（Basic 鉴权）")
    admin_password: Optional[str] = Field(default=None, description="管理员密码")
    admin_bearer_password_compat: bool = Field(
        default=False,
        description="兼容旧客户端：允许直接把管理员密码作为 Bearer Token",
    )
    jwt_secret_key: str = Field(..., description="JWT 密钥（校验管理员 JWT）")
    jwt_algorithm: str = Field(default="HS256", description="JWT 算法")

    # 凭证加密（Fernet key）
    credential_encryption_key: str = Field(
        ...,
        description="Fernet 加密密钥：用于加密存储账号 refresh_token/access_token（不要随意更换，否则历史密文无法解密）"
    )

    # Antigravity 上游
    antigravity_oauth_client_id: str = Field(
        default="",
        description="Antigravity OAuth client_id",
    )
    antigravity_oauth_client_secret: str = Field(
        default="",
        description="Antigravity OAuth client_secret",
    )
    antigravity_base_urls: List[str] = Field(
        default_factory=lambda: [
            "https://daily-cloudcode-pa.sandbox.googleapis.com/v1internal",
            "https://cloudcode-pa.googleapis.com/v1internal",
        ],
        description="上游 v1internal 基础地址（按顺序尝试，连接失败时切换下一个）",
    )
    antigravity_user_agent: str = Field(
        default="antigravity/1.104.0 linux/x86_64",
        description="上游请求 User-Agent",
    )
    upstream_timeout_seconds: float = Field(
        default=300.0,
        description="上游调用超时时间（秒），超时后视为可重试失败",
    )

    # 账号池
    token_refresh_skew_seconds: int = Field(
        default=300,
        description="access_token 距过期不足该秒数时提前刷新",
    )
    account_error_threshold: int = Field(
        default=5,
        description="连续失败次数达到该值后账号自动进入 error 状态",
    )
    account_selection_policy: str = Field(
        default="quota",
        description="账号选择策略：quota=优先剩余额度最高，lru=优先最久未使用",
    )
    quota_refresh_interval_seconds: int = Field(
        default=600,
        description="请求成功后，若额度快照早于该秒数则后台刷新一次",
    )

    # 请求日志
    request_log_retention: int = Field(
        default=5000,
        description="请求日志保留条数（超出后删除最旧记录）",
    )

    @field_validator("app_env")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """验证应用环境"""
        allowed_envs = ["development", "staging", "production"]
        if v not in allowed_envs:
            raise ValueError(f"app_env must be one of {allowed_envs}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """验证日志级别"""
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed_levels:
            raise ValueError(f"log_level must be one of {allowed_levels}")
        return v_upper

    @field_validator("account_selection_policy")
    @classmethod
    def validate_account_selection_policy(cls, v: str) -> str:
        allowed = ["quota", "lru"]
        v_lower = (v or "").strip().lower()
        if v_lower not in allowed:
            raise ValueError(f"account_selection_policy must be one of {allowed}")
        return v_lower

    @field_validator("account_error_threshold", "log_max_chars", "request_log_retention")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @property
    def is_development(self) -> bool:
        """是否为开发环境"""
        return self.app_env == "development"


# 全局配置实例
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    获取配置实例
    使用单例模式确保配置只加载一次
    """
    global settings
    if settings is None:
        settings = Settings()
    return settings
