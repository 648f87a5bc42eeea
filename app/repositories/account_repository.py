"""
账号数据仓储

约定：
- Repository 层不负责 commit()，事务由调用方统一管理
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.account import Account
from app.models.account_model_quota import AccountModelQuota


class AccountRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def list_all(self) -> Sequence[Account]:
        result = await self.db.execute(select(Account).order_by(Account.id.asc()))
        return result.scalars().all()

    async def get_by_id(self, account_id: int) -> Optional[Account]:
        result = await self.db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> Optional[Account]:
        result = await self.db.execute(select(Account).where(Account.email == email))
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        email: str,
        credentials: str,
        status: str = "active",
        project_id: Optional[str] = None,
        tier: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
    ) -> Account:
        account = Account(
            email=email,
            credentials=credentials,
            status=status,
            project_id=project_id,
            tier=tier,
            token_expires_at=token_expires_at,
        )
        self.db.add(account)
        await self.db.flush()
        await self.db.refresh(account)
        return account

    async def update_fields(self, account_id: int, values: Dict[str, Any]) -> Optional[Account]:
        if values:
            await self.db.execute(
                update(Account).where(Account.id == account_id).values(**values)
            )
            await self.db.flush()
        return await self.get_by_id(account_id)

    async def delete(self, account_id: int) -> bool:
        result = await self.db.execute(delete(Account).where(Account.id == account_id))
        await self.db.flush()
        return (result.rowcount or 0) > 0

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(Account.status, func.count(Account.id)).group_by(Account.status)
        )
        return {str(status): int(count) for status, count in result.all()}

    async def list_model_quotas(self, account_id: int) -> Sequence[AccountModelQuota]:
        result = await self.db.execute(
            select(AccountModelQuota)
            .where(AccountModelQuota.account_id == account_id)
            .order_by(AccountModelQuota.model_name.asc())
        )
        return result.scalars().all()

    async def replace_model_quotas(
        self,
        account_id: int,
        rows: Iterable[Dict[str, Any]],
    ) -> None:
        """用最新快照整体替换某账号的模型配额"""
        await self.db.execute(
            delete(AccountModelQuota).where(AccountModelQuota.account_id == account_id)
        )
        for row in rows:
            self.db.add(
                AccountModelQuota(
                    account_id=account_id,
                    model_name=row["model_name"],
                    display_name=row.get("display_name"),
                    remaining_fraction=row["remaining_fraction"],
                    reset_at=row.get("reset_at"),
                    last_fetched_at=row.get("last_fetched_at"),
                )
            )
        await self.db.flush()
