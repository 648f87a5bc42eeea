"""
Redis 客户端管理
网关只用 Redis 存两类短期数据：OAuth state 与账号额度快照缓存
"""
from typing import Optional, Any
import json
from redis import asyncio as aioredis
from redis.asyncio import Redis

from app.core.config import get_settings

KEY_PREFIX = "antigravity"
OAUTH_STATE_TTL_SECONDS = 600
QUOTA_CACHE_TTL_SECONDS = 60


def quota_cache_key(account_id: int) -> str:
    return f"{KEY_PREFIX}:quota:{account_id}"


def oauth_state_key(state: str) -> str:
    return f"{KEY_PREFIX}:oauth_state:{state}"


class RedisClient:
    """
    Redis 客户端封装类
    连接懒加载：第一次使用时才建立连接池
    """

    def __init__(self, url: Optional[str] = None):
        self._client: Optional[Redis] = None
        self._url = url or get_settings().redis_url

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                max_connections=50,
                socket_timeout=5.0,
                health_check_interval=30,
            )

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _redis(self) -> Redis:
        if self._client is None:
            await self.connect()
        return self._client

    async def ping(self) -> bool:
        """
        检查 Redis 连接是否正常

        Returns:
            bool: 连接正常返回 True,否则返回 False
        """
        try:
            return bool(await (await self._redis()).ping())
        except Exception:
            return False

    async def get(self, key: str) -> Optional[str]:
        return await (await self._redis()).get(key)

    async def set(self, key: str, value: str, expire: Optional[int] = None) -> bool:
        """
        设置键值

        Args:
            key: Redis 键
            value: 值
            expire: 过期时间(秒),None 表示不过期
        """
        client = await self._redis()
        if expire:
            return bool(await client.setex(key, expire, value))
        return bool(await client.set(key, value))

    async def delete(self, key: str) -> int:
        return await (await self._redis()).delete(key)

    async def get_json(self, key: str) -> Optional[Any]:
        """
        获取 JSON 格式的值

        Returns:
            解析后的 JSON 对象,不存在或解析失败返回 None
        """
        value = await self.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None

    async def set_json(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        json_value = json.dumps(value, ensure_ascii=False, default=str)
        return await self.set(key, json_value, expire)

    # ==================== OAuth State ====================

    async def store_oauth_state(
        self,
        state: str,
        data: Optional[dict] = None,
        ttl: int = OAUTH_STATE_TTL_SECONDS,
    ) -> bool:
        """
        存储 OAuth 授权 state

        Args:
            state: OAuth state 字符串
            data: 额外的状态数据(如 redirect_uri)
            ttl: 有效期(秒),默认 10 分钟
        """
        return await self.set_json(oauth_state_key(state), data or {}, expire=ttl)

    async def verify_oauth_state(self, state: str) -> Optional[dict]:
        """
        验证并获取 OAuth state 数据
        验证后会自动删除 state（一次性）
        """
        key = oauth_state_key(state)
        data = await self.get_json(key)
        if data is not None:
            await self.delete(key)
        return data

    # ==================== 额度快照缓存 ====================

    async def get_cached_quota(self, account_id: int) -> Optional[dict]:
        data = await self.get_json(quota_cache_key(account_id))
        return data if isinstance(data, dict) else None

    async def cache_quota(self, account_id: int, snapshot: dict, ttl: int = QUOTA_CACHE_TTL_SECONDS) -> bool:
        return await self.set_json(quota_cache_key(account_id), snapshot, expire=ttl)

    async def invalidate_quota(self, account_id: int) -> int:
        return await self.delete(quota_cache_key(account_id))


# 全局 Redis 客户端实例
_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client


async def init_redis() -> None:
    """初始化 Redis 连接"""
    client = get_redis_client()
    await client.connect()


async def close_redis() -> None:
    """关闭 Redis 连接"""
    global _redis_client
    if _redis_client:
        await _redis_client.disconnect()
        _redis_client = None
