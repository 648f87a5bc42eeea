"""
Google OAuth 授权流程

1) config：生成授权链接，state 存入 Redis（10 分钟有效）
2) exchange：校验 state -> 用 code 换 token -> 取邮箱 -> 取 project -> 注册到账号池
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, Optional

from app.cache.redis_client import OAUTH_STATE_TTL_SECONDS, RedisClient
from app.services.account_pool import AccountPoolManager
from app.services.antigravity_client import AntigravityClient

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PORT = 8080


def build_redirect_uri(port: Optional[int]) -> str:
    return f"http://localhost:{port or DEFAULT_CALLBACK_PORT}/oauth-callback"


class OAuthService:
    def __init__(self, client: AntigravityClient, pool: AccountPoolManager, redis: RedisClient):
        self.client = client
        self.pool = pool
        self.redis = redis

    async def get_config(self, port: Optional[int] = None) -> Dict[str, Any]:
        if not self.client.client_id:
            raise ValueError("未配置 ANTIGRAVITY_OAUTH_CLIENT_ID")
        state = secrets.token_urlsafe(24)
        redirect_uri = build_redirect_uri(port)
        await self.redis.store_oauth_state(state, {"redirect_uri": redirect_uri}, ttl=OAUTH_STATE_TTL_SECONDS)
        return {
            "auth_url": self.client.build_auth_url(redirect_uri=redirect_uri, state=state),
            "state": state,
            "redirect_uri": redirect_uri,
            "expires_in": OAUTH_STATE_TTL_SECONDS,
        }

    async def exchange(self, code: str, state: str, port: Optional[int] = None) -> Dict[str, Any]:
        code = (code or "").strip()
        if not code:
            raise ValueError("code 不能为空")

        state_data = await self.redis.verify_oauth_state((state or "").strip())
        if state_data is None:
            raise ValueError("state 无效或已过期")
        redirect_uri = state_data.get("redirect_uri") or build_redirect_uri(port)

        grant = await self.client.exchange_code(code, redirect_uri)
        if not grant.refresh_token:
            raise ValueError("授权结果缺少 refresh_token（请在授权页勾选离线访问后重试）")

        user_info = await self.client.get_user_info(grant.access_token)
        email = str(user_info.get("email") or "").strip()
        if not email:
            raise ValueError("无法获取账号邮箱")

        project_id, tier = await self.client.load_project(grant.access_token)
        if not project_id:
            logger.warning("账号未获取到 project id: email=%s", email)

        account = await self.pool.create(
            email,
            grant.refresh_token,
            project_id=project_id,
            tier=tier,
            access_token=grant.access_token,
            expires_in=grant.expires_in,
        )
        logger.info("OAuth 授权完成: id=%s email=%s tier=%s", account.id, email, tier)
        return account.to_public_dict()
