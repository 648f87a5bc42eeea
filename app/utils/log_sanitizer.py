"""
日志脱敏

写日志前对任意嵌套结构做一次清洗：
- 敏感字段（token / key / password 等）替换为 [redacted]
- 超长字符串截断
- 自引用结构以 [Circular] 代替，避免无限递归
"""
from __future__ import annotations

import json
import logging
from typing import Any, Optional, Set

logger = logging.getLogger(__name__)

REDACTED = "[redacted]"
CIRCULAR = "[Circular]"
DEFAULT_MAX_CHARS = 20000

SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "x_api_key",
        "api_key",
        "apikey",
        "access_token",
        "refresh_token",
        "id_token",
        "client_secret",
        "password",
        "jwt_secret",
    }
)


def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("-", "_")


def is_sensitive_key(key: Any) -> bool:
    return _normalize_key(key) in SENSITIVE_KEYS


def truncate_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}…[truncated {len(text) - max_chars} chars]"


def sanitize_for_log(
    value: Any,
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
    _seen: Optional[Set[int]] = None,
) -> Any:
    """
    返回 value 的脱敏副本（不修改原对象）

    _seen 只记录当前递归路径上的容器 id：同一对象在兄弟位置重复出现不算循环。
    """
    if isinstance(value, str):
        return truncate_text(value, max_chars)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"

    if not isinstance(value, (dict, list, tuple, set)):
        return truncate_text(str(value), max_chars)

    seen = _seen if _seen is not None else set()
    marker = id(value)
    if marker in seen:
        return CIRCULAR
    seen.add(marker)
    try:
        if isinstance(value, dict):
            out = {}
            for k, v in value.items():
                if is_sensitive_key(k):
                    out[str(k)] = REDACTED
                else:
                    out[str(k)] = sanitize_for_log(v, max_chars=max_chars, _seen=seen)
            return out
        return [sanitize_for_log(v, max_chars=max_chars, _seen=seen) for v in value]
    finally:
        seen.discard(marker)


def log_model_call(payload: Any, *, max_chars: int = DEFAULT_MAX_CHARS) -> None:
    """以 INFO 级别输出一条已脱敏的模型调用日志"""
    safe = sanitize_for_log(payload, max_chars=max_chars)
    logger.info("model call: %s", json.dumps(safe, ensure_ascii=False, default=str))
