"""
自定义异常
所有面向调用方的错误都继承 BaseAPIException，由 app.main 中的异常处理器
按请求路径渲染成对应方言（OpenAI / Anthropic / Gemini）的错误结构。
"""
from typing import Any, Dict, Optional


# Gemini 错误结构里的 status 字段
_GOOGLE_STATUS_BY_CODE = {
    400: "INVALID_ARGUMENT",
    401: "UNAUTHENTICATED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    429: "RESOURCE_EXHAUSTED",
    500: "INTERNAL",
    502: "UNAVAILABLE",
    503: "UNAVAILABLE",
    504: "DEADLINE_EXCEEDED",
}

# Anthropic 错误结构里的 error.type 字段
_ANTHROPIC_TYPE_BY_CODE = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    429: "rate_limit_error",
    503: "overloaded_error",
}


class BaseAPIException(Exception):
    """API 异常基类"""

    status_code: int = 500
    error_code: str = "api_error"
    error_type: str = "api_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """OpenAI 风格错误体（默认）"""
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.error_code,
            }
        }

    def to_anthropic_dict(self) -> Dict[str, Any]:
        return {
            "type": "error",
            "error": {
                "type": _ANTHROPIC_TYPE_BY_CODE.get(self.status_code, "api_error"),
                "message": self.message,
            },
        }

    def to_gemini_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.status_code,
                "message": self.message,
                "status": _GOOGLE_STATUS_BY_CODE.get(self.status_code, "UNKNOWN"),
            }
        }


class InvalidRequestError(BaseAPIException):
    """请求体不合法（原样返回给调用方，不重试）"""

    status_code = 400
    error_code = "invalid_request"
    error_type = "invalid_request_error"


class UnauthorizedError(BaseAPIException):
    status_code = 401
    error_code = "invalid_api_key"
    error_type = "authentication_error"


class ServerMisconfiguredError(BaseAPIException):
    status_code = 500
    error_code = "server_misconfigured"


class NoEligibleAccountError(BaseAPIException):
    """账号池中没有可用账号（可重试的 503）"""

    status_code = 503
    error_code = "no_eligible_account"
    error_type = "service_unavailable"
    retryable = True


class RefreshFailedError(BaseAPIException):
    """使用 refresh_token 刷新 access_token 失败"""

    status_code = 502
    error_code = "token_refresh_failed"
    error_type = "upstream_error"
    retryable = True

    def __init__(self, message: str, *, invalid_grant: bool = False, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.invalid_grant = invalid_grant


class UpstreamTimeoutError(BaseAPIException):
    status_code = 504
    error_code = "upstream_timeout"
    error_type = "upstream_error"
    retryable = True


class UpstreamAPIError(BaseAPIException):
    """上游 API 返回非 2xx"""

    error_type = "upstream_error"

    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        upstream_response: Optional[Dict[str, Any]] = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(
            message,
            status_code=status_code if 400 <= status_code < 600 else 502,
            error_code=f"upstream_{status_code}",
        )
        self.upstream_status = status_code
        self.upstream_response = upstream_response
        self.retry_after_seconds = retry_after_seconds

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.upstream_status == 429 or self.upstream_status >= 500


class UpstreamAuthError(UpstreamAPIError):
    """上游 401：access_token 失效"""

    def __init__(self, message: str = "upstream rejected access token", **kwargs: Any):
        super().__init__(401, message, **kwargs)
