"""
请求日志服务

目标：
1) 每次代理调用（成功/失败）写一条日志
2) 错误信息脱敏 + 截断后保存
3) 写入失败不影响主流程
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.request_log import RequestLog
from app.repositories.request_log_repository import RequestLogRepository
from app.utils.log_sanitizer import truncate_text

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 2000


@dataclass
class LogRecord:
    model: Optional[str]
    dialect: str
    stream: bool
    status: str  # success / error
    account_email: Optional[str] = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    thinking_tokens: int = 0
    latency_ms: int = 0
    error_message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def serialize_log(log: RequestLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "timestamp": log.created_at.isoformat() if log.created_at else None,
        "model": log.model,
        "dialect": log.dialect,
        "stream": bool(log.stream),
        "account_email": log.account_email,
        "status": log.status,
        "error_message": log.error_message,
        "latency_ms": log.latency_ms,
        "prompt_tokens": log.prompt_tokens,
        "completion_tokens": log.completion_tokens,
        "total_tokens": log.total_tokens,
        "thinking_tokens": log.thinking_tokens,
    }


class RequestLogService:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], *, retention: int = 5000):
        self.session_maker = session_maker
        self.retention = retention

    async def record(self, record: LogRecord) -> None:
        """写 request_log，写入失败只记 warning"""
        error_message = record.error_message
        if error_message is not None:
            error_message = truncate_text(str(error_message), MAX_ERROR_MESSAGE_LENGTH)

        try:
            async with self.session_maker() as db:
                repo = RequestLogRepository(db)
                await repo.create(
                    model=record.model,
                    dialect=record.dialect,
                    stream=record.stream,
                    account_email=record.account_email,
                    status=record.status,
                    error_message=error_message,
                    latency_ms=max(int(record.latency_ms), 0),
                    prompt_tokens=record.prompt_tokens,
                    completion_tokens=record.completion_tokens,
                    total_tokens=record.total_tokens,
                    thinking_tokens=record.thinking_tokens,
                    created_at=record.timestamp,
                )
                await db.commit()

                try:
                    await repo.trim(self.retention)
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    logger.warning(f"清理 request_log 失败: {e}")
        except Exception as e:
            logger.warning(f"记录 request_log 失败: {e}")

    async def list_logs(
        self,
        *,
        limit: int = 50,
        offset: int = 0,
        model: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Dict[str, Any]:
        async with self.session_maker() as db:
            repo = RequestLogRepository(db)
            logs = await repo.list_logs(limit=limit, offset=offset, model=model, status=status)
            total = await repo.count_logs(model=model, status=status)
        return {
            "total": total,
            "limit": limit,
            "offset": offset,
            "logs": [serialize_log(log) for log in logs],
        }

    async def get_stats(
        self,
        *,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        async with self.session_maker() as db:
            return await RequestLogRepository(db).get_stats(start_at=start_at, end_at=end_at)

    async def get_recent_stats(self, hours: int = 24) -> Dict[str, Any]:
        end_at = datetime.now(timezone.utc)
        return await self.get_stats(start_at=end_at - timedelta(hours=hours), end_at=end_at)
