"""
账号按模型的配额快照（fetchAvailableModels 的结果）

以 account_id + model_name 唯一
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, TYPE_CHECKING

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.db.base import Base

if TYPE_CHECKING:
    from app.models.account import Account


class AccountModelQuota(Base):
    __tablename__ = "account_model_quotas"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "model_name",
            name="uq_account_model_quotas_account_model",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    account_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的账号ID",
    )

    model_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="模型名称",
    )

    display_name: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="模型展示名称",
    )

    remaining_fraction: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        server_default="1",
        comment="剩余配额比例（0~1）",
    )

    reset_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="配额重置时间（可选）",
    )

    last_fetched_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="最后一次拉取配额的时间",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="更新时间",
    )

    account: Mapped["Account"] = relationship("Account", back_populates="model_quotas")

    def __repr__(self) -> str:
        return f"<AccountModelQuota(account_id={self.account_id}, model_name='{self.model_name}')>"
