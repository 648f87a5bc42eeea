"""
请求日志模型
每次代理调用（成功/失败）写入一条，只追加不修改
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.db.base import Base


class RequestLog(Base):
    """请求日志表"""

    __tablename__ = "request_logs"

    id = Column(Integer, primary_key=True, index=True)

    # 请求信息
    model = Column(String(255), nullable=True, index=True)
    dialect = Column(String(16), nullable=True)  # openai / anthropic / gemini
    stream = Column(Boolean, default=False, nullable=False)
    account_email = Column(String(255), nullable=True, index=True)

    # 请求结果
    status = Column(String(16), nullable=False, index=True)  # success / error
    error_message = Column(Text, nullable=True)  # 失败原因（脱敏 + 截断保存）
    latency_ms = Column(Integer, default=0, nullable=False)

    # Token 用量
    prompt_tokens = Column(Integer, default=0, nullable=False)
    completion_tokens = Column(Integer, default=0, nullable=False)
    total_tokens = Column(Integer, default=0, nullable=False)
    thinking_tokens = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<RequestLog(id={self.id}, model='{self.model}', status='{self.status}')>"
