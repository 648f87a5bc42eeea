"""
请求调度

一次代理调用的完整流程：
    选账号 -> 确保 token 有效 -> 转换请求 -> 调上游 -> 转换响应 -> 记录结果 -> 写日志

重试规则：
- 每个请求最多使用 2 个账号（一次切换）
- 上游 401：作废 token，强制刷新后在同一账号上重试一次，仍失败再切换
- 刷新失败 / 超时 / 上游 5xx / 429：切换账号
- 其他 4xx 原样返回，不重试
- 流式调用只在向客户端写出第一个字节之前重试
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import anyio

from app.core.exceptions import (
    BaseAPIException,
    NoEligibleAccountError,
    RefreshFailedError,
    UpstreamAPIError,
    UpstreamAuthError,
    UpstreamTimeoutError,
)
from app.schemas.dialects import Dialect, ExternalRequest
from app.services.account_pool import AccountPoolManager, DispatchOutcome, PoolAccount
from app.services.anthropic_adapter import AnthropicAdapter, AnthropicStreamTranslator, anthropic_sse
from app.services.antigravity_client import AntigravityClient, UpstreamStream
from app.services.request_log_service import LogRecord
from app.utils.antigravity_converters import (
    OPENAI_DONE_SSE,
    UsageTally,
    build_upstream_envelope,
    extract_usage,
    gemini_error_sse,
    new_request_id,
    openai_error_sse,
    sse_data,
    upstream_event_to_gemini_chunks,
    upstream_event_to_openai_chunks,
    upstream_response_to_gemini,
    upstream_response_to_openai,
)
from app.utils.log_sanitizer import DEFAULT_MAX_CHARS, log_model_call

logger = logging.getLogger(__name__)

MAX_ACCOUNTS_PER_REQUEST = 2
CLIENT_DISCONNECTED = "client disconnected"

LogSink = Callable[[LogRecord], Awaitable[None]]


@dataclass
class _DispatchContext:
    request: ExternalRequest
    request_id: str
    started: float
    account: Optional[PoolAccount] = None
    usage: UsageTally = field(default_factory=UsageTally)

    @property
    def latency_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class _OpenAIStreamEncoder:
    def __init__(self, ctx: _DispatchContext):
        self.ctx = ctx
        self.tool_calls = 0

    def start(self) -> List[bytes]:
        return []

    def feed(self, data: str) -> List[bytes]:
        request = self.ctx.request
        chunks = upstream_event_to_openai_chunks(
            data,
            self.ctx.request_id,
            request.model,
            request.include_reasoning,
            tool_call_offset=self.tool_calls,
        )
        for chunk in chunks:
            self.tool_calls += len(chunk["choices"][0]["delta"].get("tool_calls") or [])
        return [sse_data(chunk) for chunk in chunks]

    def finish(self) -> List[bytes]:
        return [OPENAI_DONE_SSE]

    def error(self, exc: BaseAPIException) -> bytes:
        return openai_error_sse(exc.message, code=exc.status_code, error_type=exc.error_type)


class _AnthropicStreamEncoder:
    def __init__(self, ctx: _DispatchContext):
        self.translator = AnthropicStreamTranslator(
            ctx.request_id,
            ctx.request.model,
            ctx.request.include_reasoning,
        )

    def start(self) -> List[bytes]:
        return [anthropic_sse(event) for event in self.translator.start()]

    def feed(self, data: str) -> List[bytes]:
        return [anthropic_sse(event) for event in self.translator.feed(data)]

    def finish(self) -> List[bytes]:
        return [anthropic_sse(event) for event in self.translator.finish()]

    def error(self, exc: BaseAPIException) -> bytes:
        return anthropic_sse(exc.to_anthropic_dict())


class _GeminiStreamEncoder:
    def __init__(self, ctx: _DispatchContext):
        self.include_thoughts = ctx.request.include_reasoning

    def start(self) -> List[bytes]:
        return []

    def feed(self, data: str) -> List[bytes]:
        return [sse_data(chunk) for chunk in upstream_event_to_gemini_chunks(data, self.include_thoughts)]

    def finish(self) -> List[bytes]:
        return []

    def error(self, exc: BaseAPIException) -> bytes:
        return gemini_error_sse(exc.message, code=exc.status_code)


_STREAM_ENCODERS = {
    Dialect.OPENAI: _OpenAIStreamEncoder,
    Dialect.ANTHROPIC: _AnthropicStreamEncoder,
    Dialect.GEMINI: _GeminiStreamEncoder,
}


class RequestDispatcher:
    def __init__(
        self,
        pool: AccountPoolManager,
        client: AntigravityClient,
        log_sink: LogSink,
        *,
        debug_model_logging: bool = False,
        log_max_chars: int = DEFAULT_MAX_CHARS,
    ):
        self.pool = pool
        self.client = client
        self.log_sink = log_sink
        self.debug_model_logging = debug_model_logging
        self.log_max_chars = log_max_chars

    def _new_context(self, request: ExternalRequest) -> _DispatchContext:
        return _DispatchContext(request=request, request_id=new_request_id(), started=time.monotonic())

    # ==================== 对外入口 ====================

    async def dispatch(self, request: ExternalRequest) -> Dict[str, Any]:
        """非流式调用，返回调用方方言的响应体"""
        ctx = self._new_context(request)
        try:
            raw = await self._run_with_failover(ctx, self.client.generate_content)
            self._debug_log(ctx, "response", raw)
            ctx.usage = extract_usage(raw)
            body = self._convert_response(ctx, raw)
        except BaseAPIException as e:
            await self._log(ctx, error=e.message)
            raise
        except Exception as e:
            await self._log(ctx, error=f"internal error: {type(e).__name__}")
            raise

        await self._record_success(ctx)
        await self._log(ctx)
        return body

    async def dispatch_stream(self, request: ExternalRequest) -> AsyncIterator[bytes]:
        """
        流式调用

        上游连接（含重试）在这里完成，失败时直接抛出异常，调用方还能返回正常的 HTTP 错误；
        成功后返回一个逐条产出 SSE 字节的异步生成器。
        """
        ctx = self._new_context(request)
        try:
            upstream = await self._run_with_failover(ctx, self.client.open_stream)
        except BaseAPIException as e:
            await self._log(ctx, error=e.message)
            raise
        except Exception as e:
            await self._log(ctx, error=f"internal error: {type(e).__name__}")
            raise
        return self._relay(ctx, upstream)

    # ==================== 重试 ====================

    async def _run_with_failover(self, ctx: _DispatchContext, call: Callable[[Dict[str, Any], str], Awaitable[Any]]) -> Any:
        tried: List[int] = []
        last_error: Optional[BaseAPIException] = None

        while len(tried) < MAX_ACCOUNTS_PER_REQUEST:
            try:
                account = self.pool.select_account(ctx.request.model, exclude=tried)
            except NoEligibleAccountError:
                if last_error is None:
                    raise
                break
            tried.append(account.id)
            ctx.account = account

            try:
                return await self._call_with_auth_retry(ctx, account, call)
            except RefreshFailedError as e:
                # 刷新失败已由账号池记账
                last_error = e
            except UpstreamTimeoutError as e:
                await self._record_failure(ctx, account, e)
                last_error = e
            except UpstreamAPIError as e:
                if not isinstance(e, UpstreamAuthError) and not e.retryable:
                    raise
                await self._record_failure(ctx, account, e)
                last_error = e

            logger.warning(
                "账号调用失败: account=%s model=%s error=%s",
                account.email,
                ctx.request.model,
                last_error.message,
            )

        if last_error is None:
            raise NoEligibleAccountError("no eligible upstream account available")
        if isinstance(last_error, UpstreamAuthError):
            raise UpstreamAPIError(502, f"upstream authentication failed: {last_error.message}")
        raise last_error

    async def _call_with_auth_retry(
        self,
        ctx: _DispatchContext,
        account: PoolAccount,
        call: Callable[[Dict[str, Any], str], Awaitable[Any]],
    ) -> Any:
        token = await self.pool.ensure_fresh_token(account)
        envelope = build_upstream_envelope(
            ctx.request,
            project_id=account.project_id,
            session_id=account.session_id,
            request_id=ctx.request_id,
        )
        self._debug_log(ctx, "request", envelope)
        try:
            return await call(envelope, token)
        except UpstreamAuthError:
            logger.info("上游拒绝 access_token，强制刷新后重试: account=%s", account.email)
            self.pool.invalidate_token(account)
            token = await self.pool.ensure_fresh_token(account, force=True)
            return await call(envelope, token)

    # ==================== 响应 ====================

    def _convert_response(self, ctx: _DispatchContext, raw: Dict[str, Any]) -> Dict[str, Any]:
        request = ctx.request
        if request.dialect is Dialect.ANTHROPIC:
            return AnthropicAdapter.upstream_to_anthropic_response(
                raw, ctx.request_id, request.model, request.include_reasoning
            )
        if request.dialect is Dialect.GEMINI:
            return upstream_response_to_gemini(raw, request.include_reasoning)
        return upstream_response_to_openai(raw, ctx.request_id, request.model, request.include_reasoning)

    async def _relay(self, ctx: _DispatchContext, upstream: UpstreamStream) -> AsyncIterator[bytes]:
        encoder = _STREAM_ENCODERS[ctx.request.dialect](ctx)
        failure: Optional[BaseAPIException] = None
        internal_error: Optional[BaseAPIException] = None
        disconnected = False
        try:
            for chunk in encoder.start():
                yield chunk
            async for data in upstream.iter_data():
                usage = extract_usage(data)
                if not usage.is_empty:
                    ctx.usage = usage
                for chunk in encoder.feed(data):
                    yield chunk
            for chunk in encoder.finish():
                yield chunk
        except (GeneratorExit, asyncio.CancelledError):
            disconnected = True
            raise
        except BaseAPIException as e:
            failure = e
            logger.warning("上游流中断: account=%s error=%s", ctx.account.email if ctx.account else None, e.message)
            yield encoder.error(e)
        except Exception as e:
            internal_error = BaseAPIException(f"internal error: {type(e).__name__}")
            logger.error("流式转发异常: request_id=%s", ctx.request_id, exc_info=True)
            yield encoder.error(internal_error)
        finally:
            # 客户端断开时所在的 cancel scope 已被取消，收尾必须屏蔽取消
            with anyio.CancelScope(shield=True):
                await upstream.aclose()
                if disconnected:
                    # 客户端主动断开不算账号故障
                    await self._log(ctx, error=CLIENT_DISCONNECTED)
                elif internal_error is not None:
                    # 网关自身的转换异常不记到账号上
                    await self._log(ctx, error=internal_error.message)
                elif failure is not None:
                    await self._record_failure(ctx, ctx.account, failure)
                    await self._log(ctx, error=failure.message)
                else:
                    await self._record_success(ctx)
                    await self._log(ctx)

    # ==================== 记账 ====================

    async def _record_success(self, ctx: _DispatchContext) -> None:
        account = ctx.account
        if account is None:
            return
        await self.pool.record_outcome(account, DispatchOutcome(success=True, model=ctx.request.model))
        self.pool.schedule_quota_refresh(account)

    async def _record_failure(
        self,
        ctx: _DispatchContext,
        account: Optional[PoolAccount],
        error: BaseAPIException,
    ) -> None:
        if account is None:
            return
        quota_exhausted = isinstance(error, UpstreamAPIError) and error.upstream_status == 429
        await self.pool.record_outcome(
            account,
            DispatchOutcome(
                success=False,
                model=ctx.request.model,
                error=error.message,
                quota_exhausted=quota_exhausted,
                retry_after_seconds=getattr(error, "retry_after_seconds", None),
            ),
        )

    def _debug_log(self, ctx: _DispatchContext, phase: str, payload: Any) -> None:
        if not self.debug_model_logging:
            return
        log_model_call(
            {
                "phase": phase,
                "request_id": ctx.request_id,
                "dialect": ctx.request.dialect.value,
                "model": ctx.request.model,
                "account": ctx.account.email if ctx.account else None,
                "payload": payload,
            },
            max_chars=self.log_max_chars,
        )

    async def _log(self, ctx: _DispatchContext, *, error: Optional[str] = None) -> None:
        usage = ctx.usage
        record = LogRecord(
            model=ctx.request.model,
            dialect=ctx.request.dialect.value,
            stream=ctx.request.stream,
            status="error" if error is not None else "success",
            account_email=ctx.account.email if ctx.account else None,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            thinking_tokens=usage.thinking_tokens,
            latency_ms=ctx.latency_ms,
            error_message=error,
        )
        try:
            await self.log_sink(record)
        except Exception as e:
            logger.warning(f"写请求日志失败: {e}")
