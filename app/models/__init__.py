"""
数据模型模块
导出所有数据模型以便其他模块使用
"""
from app.models.account import Account
from app.models.account_model_quota import AccountModelQuota
from app.models.request_log import RequestLog

__all__ = [
    "Account",
    "AccountModelQuota",
    "RequestLog",
]
