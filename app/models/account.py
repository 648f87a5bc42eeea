"""
Antigravity 账号数据模型

说明：
- 凭证（access_token/refresh_token/expires_at_ms）使用加密后的 JSON 字符串存储，避免明文落库
- status 取值：active / disabled / error
- 运行期的账号状态由 AccountPoolManager 持有，本表只是它的持久化镜像
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.db.base import Base

if TYPE_CHECKING:
    from app.models.account_model_quota import AccountModelQuota


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="账号邮箱",
    )

    project_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="cloudcode-pa Project ID（loadCodeAssist 返回）",
    )

    tier: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="账号层级（free-tier / standard-tier 等）",
    )

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        server_default="active",
        comment="账号状态：active / disabled / error",
    )

    token_valid: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default="true",
        comment="refresh_token 是否仍然有效（invalid_grant 后置为 false）",
    )

    error_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        server_default="0",
        comment="连续失败次数",
    )

    last_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="最近一次失败原因（截断保存）",
    )

    quota_remaining: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="整体剩余额度比例（0~1，未知为空）",
    )

    quota_reset_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="整体额度重置时间",
    )

    quota_updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="额度快照更新时间",
    )

    token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="access_token 过期时间",
    )

    last_refresh_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="最后一次刷新 token 的时间",
    )

    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="最后使用时间",
    )

    credentials: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="加密后的凭证 JSON（refresh_token/access_token/expires_at_ms）",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="创建时间",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="更新时间",
    )

    model_quotas: Mapped[List["AccountModelQuota"]] = relationship(
        "AccountModelQuota",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, email='{self.email}', status='{self.status}')>"
