"""
管理接口
账号池管理、请求日志、统计与概览；全部需要管理员认证
"""
import logging
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.api.deps import get_pool, get_redis, get_request_log_service, verify_admin
from app.cache.redis_client import RedisClient
from app.services.account_pool import AccountPoolManager, AccountStatus, PoolAccount
from app.services.request_log_service import RequestLogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["管理接口"], dependencies=[Depends(verify_admin)])


class AccountCreateRequest(BaseModel):
    email: str = Field(..., min_length=1, description="账号邮箱")
    refresh_token: str = Field(..., min_length=1, description="Google OAuth refresh_token")
    project_id: Optional[str] = Field(None, description="cloudcode-pa project id（可选）")


class AccountStatusRequest(BaseModel):
    status: Literal["active", "disabled"]


def _get_account_or_404(pool: AccountPoolManager, account_id: int) -> PoolAccount:
    try:
        return pool.get(account_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


# ==================== 账号 ====================


@router.get("/accounts", summary="账号列表")
async def list_accounts(pool: AccountPoolManager = Depends(get_pool)):
    accounts = [a.to_public_dict() for a in pool.list_accounts()]
    return {"total": len(accounts), "accounts": accounts}


@router.post("/accounts", summary="添加账号", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: AccountCreateRequest,
    pool: AccountPoolManager = Depends(get_pool),
):
    try:
        account = await pool.create(request.email, request.refresh_token, project_id=request.project_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return account.to_public_dict()


@router.put("/accounts/{account_id}/status", summary="启用 / 禁用账号")
async def update_account_status(
    account_id: int,
    request: AccountStatusRequest,
    pool: AccountPoolManager = Depends(get_pool),
):
    _get_account_or_404(pool, account_id)
    try:
        account = await pool.set_status(account_id, AccountStatus(request.status))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return account.to_public_dict()


@router.post("/accounts/refresh-all", summary="刷新全部账号 token")
async def refresh_all_accounts(pool: AccountPoolManager = Depends(get_pool)):
    return await pool.refresh_all()


@router.post("/accounts/{account_id}/refresh", summary="刷新单个账号 token")
async def refresh_account(account_id: int, pool: AccountPoolManager = Depends(get_pool)):
    _get_account_or_404(pool, account_id)
    account = await pool.refresh_account(account_id)
    return account.to_public_dict()


@router.delete("/accounts/{account_id}", summary="删除账号")
async def delete_account(
    account_id: int,
    pool: AccountPoolManager = Depends(get_pool),
    redis: RedisClient = Depends(get_redis),
):
    _get_account_or_404(pool, account_id)
    await pool.delete(account_id)
    try:
        await redis.invalidate_quota(account_id)
    except Exception as e:
        logger.warning("清理额度缓存失败: id=%s error=%s", account_id, e)
    return {"success": True, "id": account_id}


@router.get("/accounts/{account_id}/quota", summary="账号额度")
async def get_account_quota(
    account_id: int,
    refresh: bool = Query(False, description="忽略缓存，直接向上游查询"),
    pool: AccountPoolManager = Depends(get_pool),
    redis: RedisClient = Depends(get_redis),
):
    _get_account_or_404(pool, account_id)

    if not refresh:
        try:
            cached = await redis.get_cached_quota(account_id)
        except Exception as e:
            logger.warning("读取额度缓存失败: id=%s error=%s", account_id, e)
            cached = None
        if cached is not None:
            return {"cached": True, **cached}

    snapshot = (await pool.fetch_quota(account_id)).to_dict()
    try:
        await redis.cache_quota(account_id, snapshot)
    except Exception as e:
        logger.warning("写入额度缓存失败: id=%s error=%s", account_id, e)
    return {"cached": False, **snapshot}


# ==================== 日志 / 统计 ====================


@router.get("/logs", summary="请求日志")
async def list_request_logs(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    model: Optional[str] = Query(None),
    status_filter: Optional[Literal["success", "error"]] = Query(None, alias="status"),
    service: RequestLogService = Depends(get_request_log_service),
):
    return await service.list_logs(limit=limit, offset=offset, model=model, status=status_filter)


@router.get("/stats", summary="用量统计")
async def get_request_stats(
    start_time: Optional[int] = Query(None, description="开始时间（毫秒时间戳）"),
    end_time: Optional[int] = Query(None, description="结束时间（毫秒时间戳）"),
    service: RequestLogService = Depends(get_request_log_service),
):
    start_at = _from_epoch_ms(start_time)
    end_at = _from_epoch_ms(end_time)
    if start_at and end_at and start_at > end_at:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_time 不能晚于 end_time")
    return await service.get_stats(start_at=start_at, end_at=end_at)


@router.get("/dashboard", summary="概览")
async def get_dashboard(
    pool: AccountPoolManager = Depends(get_pool),
    service: RequestLogService = Depends(get_request_log_service),
):
    counts = pool.count_by_status()
    return {
        "accounts": {"total": sum(counts.values()), **counts},
        "last_24h": await service.get_recent_stats(hours=24),
    }
