"""
账号持久化

账号池的状态以内存为准，这里负责把它同步到 PostgreSQL：
- refresh_token / access_token 加密后存放在 accounts.credentials
- 每个模型的额度快照存放在 account_model_quotas
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.account import Account
from app.repositories.account_repository import AccountRepository
from app.services.account_pool import (
    AccountStatus,
    ModelQuota,
    PoolAccount,
    QuotaSnapshot,
)
from app.utils.encryption import CredentialCipher

logger = logging.getLogger(__name__)


def _credentials_payload(account: PoolAccount) -> Dict[str, Any]:
    expiry: Optional[datetime] = account.access_token_expiry
    return {
        "refresh_token": account.refresh_token,
        "access_token": account.access_token,
        "expires_at_ms": int(expiry.timestamp() * 1000) if expiry else None,
    }


def _status_of(value: Any) -> AccountStatus:
    try:
        return AccountStatus(str(value))
    except ValueError:
        return AccountStatus.ERROR


class SqlAccountStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], cipher: CredentialCipher):
        self.session_maker = session_maker
        self.cipher = cipher

    def _to_pool_account(self, row: Account, quotas) -> PoolAccount:
        account = PoolAccount(
            id=row.id,
            email=row.email,
            refresh_token="",
            status=_status_of(row.status),
            tier=row.tier,
            project_id=row.project_id,
            quota_remaining=row.quota_remaining,
            quota_reset_at=row.quota_reset_at,
            quota_updated_at=row.quota_updated_at,
            token_valid=bool(row.token_valid),
            error_count=int(row.error_count or 0),
            last_error=row.last_error,
            last_used_at=row.last_used_at,
            last_refresh_at=row.last_refresh_at,
        )

        try:
            creds = self.cipher.decrypt_json(row.credentials)
        except ValueError as e:
            logger.warning("账号凭证无法解密，已标记为不可用: id=%s error=%s", row.id, e)
            account.token_valid = False
            account.status = AccountStatus.ERROR
            account.last_error = str(e)
            return account

        account.refresh_token = str(creds.get("refresh_token") or "")
        account.access_token = creds.get("access_token") or None
        if account.access_token:
            account.access_token_expiry = row.token_expires_at
        if not account.refresh_token:
            account.token_valid = False

        for quota in quotas:
            account.model_quotas[quota.model_name] = ModelQuota(
                model=quota.model_name,
                remaining_fraction=float(quota.remaining_fraction),
                display_name=quota.display_name,
                reset_at=quota.reset_at,
            )
        return account

    async def load_all(self) -> List[PoolAccount]:
        async with self.session_maker() as session:
            repo = AccountRepository(session)
            rows = await repo.list_all()
            accounts: List[PoolAccount] = []
            for row in rows:
                quotas = await repo.list_model_quotas(row.id)
                accounts.append(self._to_pool_account(row, quotas))
            return accounts

    async def insert(self, account: PoolAccount) -> PoolAccount:
        async with self.session_maker() as session:
            repo = AccountRepository(session)
            row = await repo.create(
                email=account.email,
                credentials=self.cipher.encrypt_json(_credentials_payload(account)),
                status=account.status.value,
                project_id=account.project_id,
                tier=account.tier,
                token_expires_at=account.access_token_expiry,
            )
            if account.last_refresh_at is not None:
                await repo.update_fields(row.id, {"last_refresh_at": account.last_refresh_at})
            await session.commit()
            account.id = row.id
        return account

    async def save(self, account: PoolAccount) -> None:
        values = {
            "status": account.status.value,
            "tier": account.tier,
            "project_id": account.project_id,
            "token_valid": account.token_valid,
            "error_count": account.error_count,
            "last_error": account.last_error,
            "quota_remaining": account.quota_remaining,
            "quota_reset_at": account.quota_reset_at,
            "quota_updated_at": account.quota_updated_at,
            "token_expires_at": account.access_token_expiry,
            "last_refresh_at": account.last_refresh_at,
            "last_used_at": account.last_used_at,
            "credentials": self.cipher.encrypt_json(_credentials_payload(account)),
        }
        async with self.session_maker() as session:
            await AccountRepository(session).update_fields(account.id, values)
            await session.commit()

    async def delete(self, account_id: int) -> None:
        async with self.session_maker() as session:
            await AccountRepository(session).delete(account_id)
            await session.commit()

    async def save_quota_snapshot(self, account_id: int, snapshot: QuotaSnapshot) -> None:
        rows = [
            {
                "model_name": quota.model,
                "display_name": quota.display_name,
                "remaining_fraction": quota.remaining_fraction,
                "reset_at": quota.reset_at,
                "last_fetched_at": snapshot.fetched_at,
            }
            for quota in snapshot.models.values()
        ]
        async with self.session_maker() as session:
            await AccountRepository(session).replace_model_quotas(account_id, rows)
            await session.commit()
