"""
健康检查
"""
from fastapi import APIRouter, Depends

from app.api.deps import get_pool
from app.services.account_pool import AccountPoolManager

router = APIRouter(tags=["健康检查"])


@router.get("/health", summary="健康检查")
async def health_check(pool: AccountPoolManager = Depends(get_pool)):
    counts = pool.count_by_status()
    return {"status": "ok", "accounts": {"total": sum(counts.values()), **counts}}
