"""
API 依赖注入
调用方 API key 校验、管理员认证，以及从 app.state 取出运行期服务
"""
import base64
import binascii
import hmac
import logging
from typing import Optional

import jwt
from fastapi import Depends, Request

from app.cache.redis_client import RedisClient
from app.core.config import Settings, get_settings
from app.core.exceptions import ServerMisconfiguredError, UnauthorizedError
from app.services.account_pool import AccountPoolManager
from app.services.dispatcher import RequestDispatcher
from app.services.oauth_service import OAuthService
from app.services.request_log_service import RequestLogService

logger = logging.getLogger(__name__)

# 按顺序查找调用方 API key
API_KEY_HEADERS = ("x-api-key", "anthropic-api-key", "x-goog-api-key")


def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def _secret_equals(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def extract_api_key(request: Request) -> Optional[str]:
    """
    依次查找：x-api-key、anthropic-api-key、x-goog-api-key、
    Authorization: Bearer、查询参数 key
    """
    for header in API_KEY_HEADERS:
        value = (request.headers.get(header) or "").strip()
        if value:
            return value
    bearer = _bearer_token(request)
    if bearer:
        return bearer
    key = (request.query_params.get("key") or "").strip()
    return key or None


async def verify_api_key(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    expected = (settings.api_key or "").strip()
    if not expected:
        raise ServerMisconfiguredError(
            "Server misconfigured: API_KEY is not set",
            error_code="missing_api_key_config",
        )

    provided = extract_api_key(request)
    if provided is None:
        raise UnauthorizedError("Missing API key", error_code="missing_api_key")
    if not _secret_equals(provided, expected):
        raise UnauthorizedError("Invalid API key", error_code="invalid_api_key")


def _admin_from_basic(request: Request, settings: Settings) -> Optional[str]:
    auth = request.headers.get("authorization") or ""
    scheme, _, encoded = auth.partition(" ")
    if scheme.lower() != "basic" or not settings.admin_password:
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    user_ok = _secret_equals(username, settings.admin_username)
    password_ok = _secret_equals(password, settings.admin_password)
    if user_ok and password_ok:
        return username
    return None


def _admin_from_bearer(request: Request, settings: Settings) -> Optional[str]:
    token = _bearer_token(request)
    if not token:
        return None

    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError:
        claims = None
    if isinstance(claims, dict) and claims.get("role") == "admin":
        return str(claims.get("sub") or settings.admin_username)

    # 兼容旧客户端直接把管理员密码当 Bearer token
    if settings.admin_bearer_password_compat and settings.admin_password:
        if _secret_equals(token, settings.admin_password):
            return settings.admin_username
    return None


async def verify_admin(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> str:
    """返回管理员标识；认证失败抛 401"""
    principal = _admin_from_basic(request, settings) or _admin_from_bearer(request, settings)
    if principal is None:
        raise UnauthorizedError("Admin authentication required", error_code="invalid_admin_credentials")
    return principal


# ==================== 运行期服务 ====================


def get_pool(request: Request) -> AccountPoolManager:
    return request.app.state.pool


def get_dispatcher(request: Request) -> RequestDispatcher:
    return request.app.state.dispatcher


def get_request_log_service(request: Request) -> RequestLogService:
    return request.app.state.request_logs


def get_redis(request: Request) -> RedisClient:
    return request.app.state.redis


def get_oauth_service(request: Request) -> OAuthService:
    return request.app.state.oauth
