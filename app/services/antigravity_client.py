"""
Antigravity 上游客户端（cloudcode-pa v1internal + Google OAuth）

只负责 HTTP：发请求、把非 2xx / 超时映射成统一异常、把 SSE 拆成一条条 data。
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx

from app.core.exceptions import (
    RefreshFailedError,
    UpstreamAPIError,
    UpstreamAuthError,
    UpstreamTimeoutError,
)
from app.utils.log_sanitizer import truncate_text

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
OAUTH_SCOPES = (
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/cclog",
    "https://www.googleapis.com/auth/experimentsandconfigs",
)

# loadCodeAssist / onboardUser 固定走正式域名
PROJECT_BASE_URL = "https://cloudcode-pa.googleapis.com/v1internal"
CODE_ASSIST_USER_AGENT = "google-api-nodejs-client/9.15.1"
CODE_ASSIST_X_GOOG_API_CLIENT = "google-cloud-sdk vscode_cloudshelleditor/0.1"
CODE_ASSIST_METADATA = {"ideType": "ANTIGRAVITY", "platform": "PLATFORM_UNSPECIFIED", "pluginType": "GEMINI"}

INFER_X_GOOG_API_CLIENT = "gl-node/22.17.0"
INFER_CLIENT_METADATA = "ideType=IDE_UNSPECIFIED,platform=PLATFORM_UNSPECIFIED,pluginType=GEMINI"

MAX_ERROR_MESSAGE_LENGTH = 500
ONBOARD_MAX_ATTEMPTS = 5
ONBOARD_POLL_SECONDS = 2.0

_RETRY_DELAY_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)s\s*$")


@dataclass
class TokenGrant:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None


def _parse_retry_delay(payload: Any, headers: httpx.Headers) -> Optional[float]:
    """从 RetryInfo.retryDelay（"12.5s"）或 Retry-After 头解析重试等待秒数"""
    error = payload.get("error") if isinstance(payload, dict) else None
    details = error.get("details") if isinstance(error, dict) else None
    if isinstance(details, list):
        for detail in details:
            if not isinstance(detail, dict):
                continue
            match = _RETRY_DELAY_RE.match(str(detail.get("retryDelay") or ""))
            if match:
                return float(match.group(1))
    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            return None
    return None


def _extract_error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            description = payload.get("error_description")
            return f"{error}: {description}" if description else error
    return fallback


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


def upstream_error_from_response(status_code: int, body: bytes, headers: httpx.Headers) -> UpstreamAPIError:
    text = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text) if text else None
    except ValueError:
        payload = None
    message = truncate_text(
        _extract_error_message(payload, text or f"HTTP {status_code}"),
        MAX_ERROR_MESSAGE_LENGTH,
    )
    if status_code == 401:
        return UpstreamAuthError(message, upstream_response=payload if isinstance(payload, dict) else None)
    return UpstreamAPIError(
        status_code,
        message,
        upstream_response=payload if isinstance(payload, dict) else None,
        retry_after_seconds=_parse_retry_delay(payload, headers),
    )


class UpstreamStream:
    """
    一次流式调用的上游响应

    iter_data() 按 SSE 规则产出每个事件的 data 字段（多行 data 以换行拼接）；
    调用方负责在结束或中断时 aclose()。
    """

    def __init__(self, response: httpx.Response):
        self._response = response

    async def iter_data(self) -> AsyncIterator[str]:
        data_lines: List[str] = []
        try:
            async for line in self._response.aiter_lines():
                if line == "":
                    if data_lines:
                        yield "\n".join(data_lines)
                        data_lines = []
                    continue
                if line.startswith(":"):
                    continue
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip(" "))
            if data_lines:
                yield "\n".join(data_lines)
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("upstream stream timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamAPIError(502, f"upstream stream broken: {type(e).__name__}") from e

    async def aclose(self) -> None:
        await self._response.aclose()


class AntigravityClient:
    """cloudcode-pa 推理 / 配额接口 + Google OAuth 接口"""

    def __init__(
        self,
        *,
        base_urls: Sequence[str],
        client_id: str,
        client_secret: str,
        user_agent: str,
        timeout_seconds: float,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_urls:
            raise ValueError("base_urls must not be empty")
        self.base_urls = [u.rstrip("/") for u in base_urls]
        self.client_id = client_id
        self.client_secret = client_secret
        self.user_agent = user_agent
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _infer_headers(self, access_token: str, accept: str) -> Dict[str, str]:
        return {
            "User-Agent": self.user_agent,
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": accept,
            "X-Goog-Api-Client": INFER_X_GOOG_API_CLIENT,
            "Client-Metadata": INFER_CLIENT_METADATA,
        }

    def _project_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "User-Agent": CODE_ASSIST_USER_AGENT,
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "X-Goog-Api-Client": CODE_ASSIST_X_GOOG_API_CLIENT,
        }

    async def _send(self, request_factory) -> httpx.Response:
        """
        按 base_urls 顺序尝试；只有连接失败才切换下一个地址
        request_factory(base_url) -> httpx.Request
        """
        last_error: Optional[Exception] = None
        for base_url in self.base_urls:
            request = request_factory(base_url)
            try:
                return await self._http.send(request, stream=True)
            except httpx.ConnectError as e:
                logger.warning("上游连接失败，尝试下一个地址: %s (%s)", base_url, type(e).__name__)
                last_error = e
                continue
            except httpx.TimeoutException as e:
                raise UpstreamTimeoutError("upstream request timed out") from e
            except httpx.HTTPError as e:
                raise UpstreamAPIError(502, f"upstream transport error: {type(e).__name__}") from e
        raise UpstreamAPIError(502, f"upstream unreachable: {type(last_error).__name__}") from last_error

    async def _check_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            body = await resp.aread()
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("upstream request timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamAPIError(502, f"upstream transport error: {type(e).__name__}") from e
        finally:
            await resp.aclose()
        error = upstream_error_from_response(resp.status_code, body, resp.headers)
        logger.warning("上游返回错误: HTTP %s %s", resp.status_code, error.message)
        raise error

    async def _post_json(self, action: str, body: Dict[str, Any], access_token: str) -> Dict[str, Any]:
        resp = await self._send(
            lambda base_url: self._http.build_request(
                "POST",
                f"{base_url}:{action}",
                json=body,
                headers=self._infer_headers(access_token, "application/json"),
            )
        )
        await self._check_status(resp)
        try:
            await resp.aread()
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("upstream request timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamAPIError(502, f"upstream transport error: {type(e).__name__}") from e
        finally:
            await resp.aclose()
        data = _json_or_none(resp)
        if not isinstance(data, dict):
            raise UpstreamAPIError(502, f"{action} 响应格式异常（非对象）")
        return data

    # ==================== 推理 ====================

    async def generate_content(self, envelope: Dict[str, Any], access_token: str) -> Dict[str, Any]:
        return await self._post_json("generateContent", envelope, access_token)

    async def open_stream(self, envelope: Dict[str, Any], access_token: str) -> UpstreamStream:
        """
        发起流式调用并检查状态码

        非 2xx 在这里就抛出，调用方因此可以在向客户端写出任何字节之前决定是否重试。
        """
        resp = await self._send(
            lambda base_url: self._http.build_request(
                "POST",
                f"{base_url}:streamGenerateContent",
                params={"alt": "sse"},
                json=envelope,
                headers=self._infer_headers(access_token, "text/event-stream"),
            )
        )
        await self._check_status(resp)
        return UpstreamStream(resp)

    async def fetch_available_models(self, access_token: str, project: Optional[str]) -> Dict[str, Any]:
        return await self._post_json("fetchAvailableModels", {"project": project or ""}, access_token)

    # ==================== OAuth ====================

    def build_auth_url(self, *, redirect_uri: str, state: str) -> str:
        query = {
            "access_type": "offline",
            "client_id": self.client_id,
            "prompt": "consent",
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(OAUTH_SCOPES),
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(query)}"

    async def _token_request(self, form: Dict[str, str], action: str) -> TokenGrant:
        try:
            resp = await self._http.post(
                GOOGLE_TOKEN_URL,
                data=form,
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        except httpx.TimeoutException as e:
            raise RefreshFailedError(f"{action} timed out") from e
        except httpx.HTTPError as e:
            raise RefreshFailedError(f"{action} failed: {type(e).__name__}") from e

        payload = _json_or_none(resp)
        if resp.status_code >= 400:
            error_code = payload.get("error") if isinstance(payload, dict) else None
            description = payload.get("error_description") if isinstance(payload, dict) else None
            message = f"{action} failed: HTTP {resp.status_code}"
            if error_code:
                message = f"{message} {error_code}"
            if description:
                message = f"{message} ({truncate_text(str(description), 200)})"
            raise RefreshFailedError(message, invalid_grant=error_code == "invalid_grant")

        if not isinstance(payload, dict) or not str(payload.get("access_token") or "").strip():
            raise RefreshFailedError(f"{action} response missing access_token")

        try:
            expires_in = int(payload.get("expires_in") or 3599)
        except (TypeError, ValueError):
            expires_in = 3599
        return TokenGrant(
            access_token=str(payload["access_token"]),
            expires_in=expires_in,
            refresh_token=payload.get("refresh_token"),
            id_token=payload.get("id_token"),
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        if not (refresh_token or "").strip():
            raise RefreshFailedError("missing refresh_token", invalid_grant=True)
        return await self._token_request(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token.strip(),
            },
            "token refresh",
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        return await self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            "code exchange",
        )

    async def get_user_info(self, access_token: str) -> Dict[str, Any]:
        try:
            resp = await self._http.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError("userinfo request timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamAPIError(502, f"userinfo transport error: {type(e).__name__}") from e
        if resp.status_code >= 400:
            raise upstream_error_from_response(resp.status_code, resp.content, resp.headers)
        data = _json_or_none(resp)
        if not isinstance(data, dict):
            raise UpstreamAPIError(502, "用户信息响应格式异常（非对象）")
        return data

    # ==================== Project ====================

    @staticmethod
    def _extract_project_id(value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            for key in ("id", "projectId", "project_id"):
                v = value.get(key)
                if isinstance(v, str) and v.strip():
                    return v.strip()
        return None

    async def _project_post(self, action: str, body: Dict[str, Any], access_token: str) -> Dict[str, Any]:
        try:
            resp = await self._http.post(
                f"{PROJECT_BASE_URL}:{action}",
                json=body,
                headers=self._project_headers(access_token),
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"{action} timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamAPIError(502, f"{action} transport error: {type(e).__name__}") from e
        if resp.status_code >= 400:
            raise upstream_error_from_response(resp.status_code, resp.content, resp.headers)
        data = _json_or_none(resp)
        if not isinstance(data, dict):
            raise UpstreamAPIError(502, f"{action} 响应格式异常（非对象）")
        return data

    async def load_project(self, access_token: str) -> Tuple[Optional[str], Optional[str]]:
        """
        loadCodeAssist 取 project id 与层级；没有 project 时走 onboardUser 轮询

        返回 (project_id, tier)
        """
        load_resp = await self._project_post("loadCodeAssist", {"metadata": CODE_ASSIST_METADATA}, access_token)
        current_tier = load_resp.get("currentTier")
        tier = current_tier.get("id") if isinstance(current_tier, dict) else None

        project_id = self._extract_project_id(load_resp.get("cloudaicompanionProject"))
        if project_id:
            return project_id, tier

        tier_id = "legacy-tier"
        for allowed in load_resp.get("allowedTiers") or []:
            if isinstance(allowed, dict) and allowed.get("isDefault") and allowed.get("id"):
                tier_id = str(allowed["id"])
                break

        body = {"tierId": tier_id, "metadata": CODE_ASSIST_METADATA}
        for _ in range(ONBOARD_MAX_ATTEMPTS):
            data = await self._project_post("onboardUser", body, access_token)
            if not data.get("done"):
                await asyncio.sleep(ONBOARD_POLL_SECONDS)
                continue
            project_id = self._extract_project_id(
                (data.get("response") or {}).get("cloudaicompanionProject")
            ) or self._extract_project_id(data.get("cloudaicompanionProject"))
            return project_id, tier or tier_id
        logger.warning("onboardUser 未在 %s 次轮询内完成", ONBOARD_MAX_ATTEMPTS)
        return None, tier or tier_id
