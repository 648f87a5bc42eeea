"""
RequestLog Repository
提供请求日志的写入/查询/统计能力
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.request_log import RequestLog


class RequestLogRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    def _apply_filters(
        self,
        stmt,
        *,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        model: Optional[str] = None,
        status: Optional[str] = None,
    ):
        if start_at is not None:
            stmt = stmt.where(RequestLog.created_at >= start_at)
        if end_at is not None:
            stmt = stmt.where(RequestLog.created_at <= end_at)
        if model:
            stmt = stmt.where(RequestLog.model == model)
        if status:
            stmt = stmt.where(RequestLog.status == status)
        return stmt

    async def create(self, **values: Any) -> RequestLog:
        log = RequestLog(**values)
        self.db.add(log)
        await self.db.flush()
        return log

    async def trim(self, keep: int) -> None:
        """只保留最近 keep 条"""
        cutoff_stmt = (
            select(RequestLog.id)
            .order_by(RequestLog.id.desc())
            .offset(keep)
            .limit(1)
        )
        cutoff_id = (await self.db.execute(cutoff_stmt)).scalar_one_or_none()
        if cutoff_id is not None:
            await self.db.execute(delete(RequestLog).where(RequestLog.id <= cutoff_id))

    async def list_logs(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        model: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[RequestLog]:
        stmt = self._apply_filters(select(RequestLog), model=model, status=status)
        stmt = stmt.order_by(RequestLog.created_at.desc(), RequestLog.id.desc()).limit(limit).offset(offset)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_logs(
        self,
        *,
        model: Optional[str] = None,
        status: Optional[str] = None,
    ) -> int:
        stmt = self._apply_filters(select(func.count(RequestLog.id)), model=model, status=status)
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def get_stats(
        self,
        *,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        base_stmt = select(
            func.count(RequestLog.id).label("total_requests"),
            func.coalesce(
                func.sum(case((RequestLog.status == "success", 1), else_=0)), 0
            ).label("success_requests"),
            func.coalesce(
                func.sum(case((RequestLog.status == "error", 1), else_=0)), 0
            ).label("failed_requests"),
            func.coalesce(func.sum(RequestLog.prompt_tokens), 0).label("prompt_tokens"),
            func.coalesce(func.sum(RequestLog.completion_tokens), 0).label("completion_tokens"),
            func.coalesce(func.sum(RequestLog.total_tokens), 0).label("total_tokens"),
            func.coalesce(func.sum(RequestLog.thinking_tokens), 0).label("thinking_tokens"),
            func.coalesce(func.avg(RequestLog.latency_ms), 0).label("avg_latency_ms"),
        )
        base_stmt = self._apply_filters(base_stmt, start_at=start_at, end_at=end_at)
        row = (await self.db.execute(base_stmt)).one()

        # 按 model 聚合（只返回 top 50，避免返回过大）
        by_model_stmt = select(
            RequestLog.model,
            func.count(RequestLog.id).label("total_requests"),
            func.coalesce(
                func.sum(case((RequestLog.status == "success", 1), else_=0)), 0
            ).label("success_requests"),
            func.coalesce(func.sum(RequestLog.prompt_tokens), 0).label("prompt_tokens"),
            func.coalesce(func.sum(RequestLog.completion_tokens), 0).label("completion_tokens"),
            func.coalesce(func.sum(RequestLog.total_tokens), 0).label("total_tokens"),
        )
        by_model_stmt = self._apply_filters(
            by_model_stmt, start_at=start_at, end_at=end_at
        ).group_by(RequestLog.model)
        by_model_stmt = by_model_stmt.order_by(func.count(RequestLog.id).desc()).limit(50)
        by_model_rows = (await self.db.execute(by_model_stmt)).all()

        model_usage: List[Dict[str, Any]] = []
        for r in by_model_rows:
            model_usage.append(
                {
                    "model": r.model or "unknown",
                    "total_requests": int(r.total_requests or 0),
                    "success_requests": int(r.success_requests or 0),
                    "prompt_tokens": int(r.prompt_tokens or 0),
                    "completion_tokens": int(r.completion_tokens or 0),
                    "total_tokens": int(r.total_tokens or 0),
                }
            )

        return {
            "stats": {
                "total_requests": int(row.total_requests or 0),
                "success_requests": int(row.success_requests or 0),
                "failed_requests": int(row.failed_requests or 0),
                "prompt_tokens": int(row.prompt_tokens or 0),
                "completion_tokens": int(row.completion_tokens or 0),
                "total_tokens": int(row.total_tokens or 0),
                "thinking_tokens": int(row.thinking_tokens or 0),
                "avg_latency_ms": float(row.avg_latency_ms or 0),
            },
            "model_usage": model_usage,
        }
