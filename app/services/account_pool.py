"""
账号池管理

进程内唯一持有账号运行期状态的地方。对外只暴露事务性操作
（select_account / ensure_fresh_token / record_outcome / 管理操作），
状态迁移规则全部集中在这里：

    active <-> disabled      管理员切换
    active  -> error         连续失败次数达到阈值
    error   -> active        请求成功或管理员手动刷新成功

持久化通过 AccountStore 完成；持久化失败只记日志，不影响当前请求。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol
from uuid import uuid4

from app.core.exceptions import NoEligibleAccountError, RefreshFailedError
from app.utils.log_sanitizer import truncate_text

logger = logging.getLogger(__name__)

MAX_LAST_ERROR_LENGTH = 500
DEFAULT_QUOTA_RETRY_SECONDS = 60.0


class AccountStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"
    ERROR = "error"


class SelectionPolicy(str, Enum):
    QUOTA = "quota"
    LRU = "lru"


@dataclass
class ModelQuota:
    model: str
    remaining_fraction: float
    display_name: Optional[str] = None
    reset_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name or self.model,
            "remainingFraction": self.remaining_fraction,
            "resetTime": self.reset_at.isoformat() if self.reset_at else None,
        }


@dataclass
class QuotaSnapshot:
    models: Dict[str, ModelQuota]
    overall_quota: Optional[float]
    reset_time: Optional[datetime]
    fetched_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "models": {name: quota.to_dict() for name, quota in self.models.items()},
            "overallQuota": self.overall_quota,
            "resetTime": self.reset_time.isoformat() if self.reset_time else None,
            "fetchedAt": self.fetched_at.isoformat(),
        }


@dataclass
class PoolAccount:
    id: int
    email: str
    refresh_token: str = field(repr=False)
    access_token: Optional[str] = field(default=None, repr=False)
    access_token_expiry: Optional[datetime] = None
    status: AccountStatus = AccountStatus.ACTIVE
    tier: Optional[str] = None
    project_id: Optional[str] = None
    quota_remaining: Optional[float] = None
    quota_reset_at: Optional[datetime] = None
    quota_updated_at: Optional[datetime] = None
    model_quotas: Dict[str, ModelQuota] = field(default_factory=dict)
    token_valid: bool = True
    error_count: int = 0
    last_error: Optional[str] = None
    last_used_at: Optional[datetime] = None
    last_refresh_at: Optional[datetime] = None
    # 上游 request.sessionId；进程内对同一账号保持稳定
    session_id: str = field(default_factory=lambda: str(uuid4()))

    def to_public_dict(self) -> Dict[str, Any]:
        """管理接口返回的字段（不含任何凭证）"""
        return {
            "id": self.id,
            "email": self.email,
            "status": self.status.value,
            "tier": self.tier,
            "project_id": self.project_id,
            "token_valid": self.token_valid,
            "quota_remaining": self.quota_remaining,
            "quota_reset_at": self.quota_reset_at,
            "quota_updated_at": self.quota_updated_at,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_used_at": self.last_used_at,
            "last_refresh_at": self.last_refresh_at,
            "access_token_expiry": self.access_token_expiry,
        }


@dataclass
class DispatchOutcome:
    success: bool
    model: Optional[str] = None
    error: Optional[str] = None
    # 上游 429：该模型额度耗尽，直到 retry_after_seconds 之后
    quota_exhausted: bool = False
    retry_after_seconds: Optional[float] = None
    quota_remaining: Optional[float] = None


@dataclass
class PoolPolicy:
    selection: SelectionPolicy = SelectionPolicy.QUOTA
    error_threshold: int = 5
    refresh_skew_seconds: int = 300
    quota_refresh_interval_seconds: int = 600


class AccountStore(Protocol):
    async def load_all(self) -> List[PoolAccount]: ...

    async def insert(self, account: PoolAccount) -> PoolAccount: ...

    async def save(self, account: PoolAccount) -> None: ...

    async def delete(self, account_id: int) -> None: ...

    async def save_quota_snapshot(self, account_id: int, snapshot: QuotaSnapshot) -> None: ...


def _parse_reset_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _clamp_fraction(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return min(max(f, 0.0), 1.0)


def parse_quota_snapshot(data: Dict[str, Any], *, now: datetime) -> QuotaSnapshot:
    """
    fetchAvailableModels 响应 -> QuotaSnapshot

    models: {name: {displayName, quotaInfo: {remainingFraction, resetTime}}}
    quotaInfo 存在但缺少 remainingFraction 表示额度已用尽。
    """
    models: Dict[str, ModelQuota] = {}
    raw_models = data.get("models") if isinstance(data, dict) else None
    if isinstance(raw_models, dict):
        for name, info in raw_models.items():
            if not isinstance(info, dict):
                continue
            quota_info = info.get("quotaInfo")
            if not isinstance(quota_info, dict):
                continue
            fraction = _clamp_fraction(quota_info.get("remainingFraction"))
            models[str(name)] = ModelQuota(
                model=str(name),
                remaining_fraction=0.0 if fraction is None else fraction,
                display_name=info.get("displayName"),
                reset_at=_parse_reset_time(quota_info.get("resetTime")),
            )

    overall = min((q.remaining_fraction for q in models.values()), default=None)
    resets = [q.reset_at for q in models.values() if q.reset_at is not None]
    return QuotaSnapshot(
        models=models,
        overall_quota=overall,
        reset_time=min(resets) if resets else None,
        fetched_at=now,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountPoolManager:
    """
    账号池

    upstream 需要提供 refresh_access_token(refresh_token) 与
    fetch_available_models(access_token, project)，即 AntigravityClient。
    """

    def __init__(
        self,
        store: AccountStore,
        upstream: Any,
        policy: Optional[PoolPolicy] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.upstream = upstream
        self.policy = policy or PoolPolicy()
        self._now = clock or _utcnow
        self._accounts: Dict[int, PoolAccount] = {}
        self._refreshing: Dict[int, "asyncio.Future[str]"] = {}
        self._background: Dict[int, "asyncio.Task[Any]"] = {}

    async def load(self) -> int:
        accounts = await self.store.load_all()
        self._accounts = {a.id: a for a in accounts}
        logger.info("账号池已加载 %s 个账号", len(self._accounts))
        return len(self._accounts)

    async def aclose(self) -> None:
        tasks = list(self._background.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    # ==================== 查询 ====================

    def list_accounts(self) -> List[PoolAccount]:
        return [self._accounts[k] for k in sorted(self._accounts)]

    def get(self, account_id: int) -> PoolAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise ValueError("账号不存在")
        return account

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in AccountStatus}
        for account in self._accounts.values():
            counts[account.status.value] += 1
        return counts

    # ==================== 选择 ====================

    def remaining_quota(self, account: PoolAccount, model: Optional[str]) -> Optional[float]:
        """
        返回 (剩余比例) ；按模型的快照优先，否则用整体额度；未知返回 None
        已过重置时间的耗尽记录视为未知
        """
        now = self._now()
        quota = account.model_quotas.get(model) if model else None
        if quota is not None:
            if quota.remaining_fraction <= 0 and quota.reset_at is not None and quota.reset_at <= now:
                return None
            return quota.remaining_fraction
        if account.quota_remaining is None:
            return None
        if account.quota_remaining <= 0 and account.quota_reset_at is not None and account.quota_reset_at <= now:
            return None
        return account.quota_remaining

    def is_eligible(self, account: PoolAccount, model: Optional[str]) -> bool:
        if account.status is not AccountStatus.ACTIVE or not account.token_valid:
            return False
        remaining = self.remaining_quota(account, model)
        return remaining is None or remaining > 0

    def eligible_accounts(self, model: Optional[str], exclude: Iterable[int] = ()) -> List[PoolAccount]:
        excluded = set(exclude)
        return [
            a for a in self.list_accounts()
            if a.id not in excluded and self.is_eligible(a, model)
        ]

    def _sort_key(self, account: PoolAccount, model: Optional[str]):
        remaining = self.remaining_quota(account, model)
        remaining = 1.0 if remaining is None else remaining
        last_used = account.last_used_at.timestamp() if account.last_used_at else 0.0
        if self.policy.selection is SelectionPolicy.LRU:
            return (last_used, -remaining, account.id)
        return (-remaining, last_used, account.id)

    def select_account(self, model: Optional[str], exclude: Iterable[int] = ()) -> PoolAccount:
        """
        选一个可用账号并标记 last_used_at

        可用 = active + token 有效 + 该模型（或整体）额度未耗尽
        """
        candidates = self.eligible_accounts(model, exclude)
        if not candidates:
            raise NoEligibleAccountError("no eligible upstream account available")
        chosen = min(candidates, key=lambda a: self._sort_key(a, model))
        chosen.last_used_at = self._now()
        return chosen

    # ==================== token ====================

    def _token_is_fresh(self, account: PoolAccount) -> bool:
        if not account.access_token or account.access_token_expiry is None:
            return False
        skew = timedelta(seconds=self.policy.refresh_skew_seconds)
        return account.access_token_expiry - skew > self._now()

    def invalidate_token(self, account: PoolAccount) -> None:
        account.access_token = None
        account.access_token_expiry = None

    async def ensure_fresh_token(self, account: PoolAccount, *, force: bool = False) -> str:
        """
        返回可用的 access_token，必要时用 refresh_token 刷新

        同一账号同时只会有一个刷新请求在途，其余调用方等待同一个结果；
        不同账号的刷新互不影响。
        """
        if not force and self._token_is_fresh(account):
            return account.access_token  # type: ignore[return-value]

        future = self._refreshing.get(account.id)
        if future is None:
            future = asyncio.ensure_future(self._refresh(account))
            self._refreshing[account.id] = future
            future.add_done_callback(lambda f, account_id=account.id: self._forget_refresh(account_id, f))
        return await asyncio.shield(future)

    def _forget_refresh(self, account_id: int, future: "asyncio.Future[str]") -> None:
        if self._refreshing.get(account_id) is future:
            del self._refreshing[account_id]
        if not future.cancelled():
            # 所有等待方都已取消时，避免 "exception was never retrieved"
            future.exception()

    async def _refresh(self, account: PoolAccount) -> str:
        try:
            grant = await self.upstream.refresh_access_token(account.refresh_token)
        except RefreshFailedError as e:
            self.invalidate_token(account)
            if e.invalid_grant:
                account.token_valid = False
            self._register_failure(account, e.message)
            logger.warning("账号 token 刷新失败: id=%s email=%s error=%s", account.id, account.email, e.message)
            await self._persist(account)
            raise

        now = self._now()
        account.access_token = grant.access_token
        account.access_token_expiry = now + timedelta(seconds=grant.expires_in)
        account.last_refresh_at = now
        account.token_valid = True
        if grant.refresh_token:
            account.refresh_token = grant.refresh_token
        logger.info("账号 token 已刷新: id=%s email=%s", account.id, account.email)
        await self._persist(account)
        return grant.access_token

    # ==================== 结果记录 ====================

    def _register_failure(self, account: PoolAccount, message: Optional[str]) -> None:
        account.error_count += 1
        account.last_error = truncate_text(message or "unknown error", MAX_LAST_ERROR_LENGTH)
        if account.status is AccountStatus.ACTIVE and account.error_count >= self.policy.error_threshold:
            account.status = AccountStatus.ERROR
            logger.warning(
                "账号连续失败 %s 次，已标记为 error: id=%s email=%s",
                account.error_count,
                account.id,
                account.email,
            )

    def _mark_model_exhausted(self, account: PoolAccount, model: str, retry_after: Optional[float]) -> None:
        reset_at = self._now() + timedelta(seconds=retry_after or DEFAULT_QUOTA_RETRY_SECONDS)
        existing = account.model_quotas.get(model)
        account.model_quotas[model] = ModelQuota(
            model=model,
            remaining_fraction=0.0,
            display_name=existing.display_name if existing else None,
            reset_at=reset_at,
        )

    async def record_outcome(self, account: PoolAccount, outcome: DispatchOutcome) -> None:
        now = self._now()
        if outcome.success:
            account.error_count = 0
            account.last_error = None
            account.last_used_at = now
            if account.status is AccountStatus.ERROR:
                account.status = AccountStatus.ACTIVE
            if outcome.quota_remaining is not None:
                fraction = _clamp_fraction(outcome.quota_remaining)
                if outcome.model and outcome.model in account.model_quotas:
                    account.model_quotas[outcome.model].remaining_fraction = fraction or 0.0
                else:
                    account.quota_remaining = fraction
                account.quota_updated_at = now
        elif outcome.quota_exhausted and outcome.model:
            # 额度耗尽不是账号故障，不计入 error_count
            self._mark_model_exhausted(account, outcome.model, outcome.retry_after_seconds)
            account.last_error = truncate_text(outcome.error or "quota exhausted", MAX_LAST_ERROR_LENGTH)
        else:
            self._register_failure(account, outcome.error)
        await self._persist(account)

    async def _persist(self, account: PoolAccount) -> None:
        try:
            await self.store.save(account)
        except Exception as e:
            logger.warning("保存账号状态失败（不影响主流程）: id=%s error=%s", account.id, type(e).__name__, exc_info=True)

    # ==================== 额度 ====================

    def _apply_snapshot(self, account: PoolAccount, snapshot: QuotaSnapshot) -> None:
        account.model_quotas = dict(snapshot.models)
        account.quota_remaining = snapshot.overall_quota
        account.quota_reset_at = snapshot.reset_time
        account.quota_updated_at = snapshot.fetched_at

    async def fetch_quota(self, account_id: int) -> QuotaSnapshot:
        """显式拉取一次上游额度快照；只更新额度字段，不改变账号状态"""
        account = self.get(account_id)
        token = await self.ensure_fresh_token(account)
        data = await self.upstream.fetch_available_models(token, account.project_id)
        snapshot = parse_quota_snapshot(data, now=self._now())
        self._apply_snapshot(account, snapshot)
        try:
            await self.store.save_quota_snapshot(account.id, snapshot)
        except Exception as e:
            logger.warning("保存额度快照失败: id=%s error=%s", account.id, type(e).__name__, exc_info=True)
        await self._persist(account)
        return snapshot

    def schedule_quota_refresh(self, account: PoolAccount) -> bool:
        """额度快照过期时在后台刷新一次；已有任务在跑则跳过"""
        if account.id in self._background:
            return False
        updated = account.quota_updated_at
        interval = timedelta(seconds=self.policy.quota_refresh_interval_seconds)
        if updated is not None and self._now() - updated < interval:
            return False

        async def _run() -> None:
            try:
                await self.fetch_quota(account.id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.info("后台刷新额度失败: id=%s error=%s", account.id, type(e).__name__)

        task = asyncio.ensure_future(_run())
        self._background[account.id] = task
        task.add_done_callback(lambda _t, account_id=account.id: self._background.pop(account_id, None))
        return True

    # ==================== 管理操作 ====================

    async def create(
        self,
        email: str,
        refresh_token: str,
        *,
        project_id: Optional[str] = None,
        tier: Optional[str] = None,
        access_token: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> PoolAccount:
        email = (email or "").strip()
        refresh_token = (refresh_token or "").strip()
        if not email:
            raise ValueError("email 不能为空")
        if not refresh_token:
            raise ValueError("refresh_token 不能为空")
        if any(a.email == email for a in self._accounts.values()):
            raise ValueError("账号已存在")

        account = PoolAccount(
            id=0,
            email=email,
            refresh_token=refresh_token,
            project_id=project_id,
            tier=tier,
        )
        if access_token and expires_in:
            now = self._now()
            account.access_token = access_token
            account.access_token_expiry = now + timedelta(seconds=expires_in)
            account.last_refresh_at = now

        stored = await self.store.insert(account)
        self._accounts[stored.id] = stored
        logger.info("已添加账号: id=%s email=%s", stored.id, stored.email)
        return stored

    async def set_status(self, account_id: int, status: AccountStatus) -> PoolAccount:
        account = self.get(account_id)
        if status not in (AccountStatus.ACTIVE, AccountStatus.DISABLED):
            raise ValueError("status 只能是 active 或 disabled")
        account.status = status
        if status is AccountStatus.ACTIVE:
            account.error_count = 0
            account.last_error = None
        await self._persist(account)
        return account

    async def delete(self, account_id: int) -> None:
        self.get(account_id)
        await self.store.delete(account_id)
        self._accounts.pop(account_id, None)
        task = self._background.pop(account_id, None)
        if task is not None:
            task.cancel()
        logger.info("已删除账号: id=%s", account_id)

    async def refresh_account(self, account_id: int) -> PoolAccount:
        """强制刷新 token；成功后把 error 状态的账号恢复为 active"""
        account = self.get(account_id)
        await self.ensure_fresh_token(account, force=True)
        account.error_count = 0
        account.last_error = None
        if account.status is AccountStatus.ERROR:
            account.status = AccountStatus.ACTIVE
        await self._persist(account)
        return account

    async def refresh_all(self) -> Dict[str, Any]:
        """
        逐个刷新所有账号；单个失败不会中断整体，失败与成功都收集到结果里
        """
        accounts = self.list_accounts()
        results = await asyncio.gather(
            *(self.refresh_account(a.id) for a in accounts),
            return_exceptions=True,
        )

        items: List[Dict[str, Any]] = []
        failed = 0
        for account, result in zip(accounts, results):
            if isinstance(result, BaseException):
                failed += 1
                message = getattr(result, "message", None) or type(result).__name__
                items.append({"id": account.id, "email": account.email, "success": False, "error": message})
            else:
                items.append({"id": account.id, "email": account.email, "success": True, "error": None})

        return {
            "total": len(accounts),
            "success": len(accounts) - failed,
            "failed": failed,
            "results": items,
        }
