"""
FastAPI 应用主文件
应用入口点和配置
"""
import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import (
    admin_router,
    anthropic_router,
    gemini_router,
    health_router,
    oauth_router,
    openai_router,
)
from app.cache import close_redis, get_redis_client, init_redis
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    BaseAPIException,
    InvalidRequestError,
    NoEligibleAccountError,
    UpstreamAPIError,
)
from app.db.session import close_db, get_session_maker, init_db
from app.services.account_pool import AccountPoolManager, PoolPolicy, SelectionPolicy
from app.services.account_store import SqlAccountStore
from app.services.antigravity_client import AntigravityClient
from app.services.dispatcher import RequestDispatcher
from app.services.oauth_service import OAuthService
from app.services.request_log_service import RequestLogService
from app.utils.encryption import get_credential_cipher

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# 创建模块级别的 logger
logger = logging.getLogger(__name__)

# 账号池无可用账号时建议调用方等待的秒数
NO_ACCOUNT_RETRY_AFTER_SECONDS = 30


# ==================== 生命周期事件 ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理
    启动时组装 上游客户端 -> 账号池 -> 调度器，挂到 app.state 上
    """
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    try:
        logger.info("正在初始化数据库连接...")
        await init_db()
        logger.info("✓ 数据库连接成功")
    except Exception as e:
        logger.error(f"✗ 数据库连接失败: {str(e)}")
        raise

    try:
        logger.info("正在初始化 Redis 连接...")
        await init_redis()
        redis = get_redis_client()
        await redis.ping()
        logger.info("✓ Redis 连接成功")
    except Exception as e:
        logger.error(f"✗ Redis 连接失败: {str(e)}")
        raise

    client = AntigravityClient(
        base_urls=settings.antigravity_base_urls,
        client_id=settings.antigravity_oauth_client_id,
        client_secret=settings.antigravity_oauth_client_secret,
        user_agent=settings.antigravity_user_agent,
        timeout_seconds=settings.upstream_timeout_seconds,
    )
    session_maker = get_session_maker()
    pool = AccountPoolManager(
        SqlAccountStore(session_maker, get_credential_cipher()),
        client,
        PoolPolicy(
            selection=SelectionPolicy(settings.account_selection_policy),
            error_threshold=settings.account_error_threshold,
            refresh_skew_seconds=settings.token_refresh_skew_seconds,
            quota_refresh_interval_seconds=settings.quota_refresh_interval_seconds,
        ),
    )
    await pool.load()

    request_logs = RequestLogService(session_maker, retention=settings.request_log_retention)
    app.state.client = client
    app.state.pool = pool
    app.state.redis = redis
    app.state.request_logs = request_logs
    app.state.dispatcher = RequestDispatcher(
        pool,
        client,
        request_logs.record,
        debug_model_logging=settings.debug_model_logging,
        log_max_chars=settings.log_max_chars,
    )
    app.state.oauth = OAuthService(client, pool, redis)

    logger.info("🚀 应用启动完成")

    yield

    logger.info("正在关闭应用...")

    await pool.aclose()
    await client.aclose()

    try:
        await close_db()
        logger.info("✓ 数据库连接已关闭")
    except Exception as e:
        logger.error(f"✗ 关闭数据库连接失败: {str(e)}")

    try:
        await close_redis()
        logger.info("✓ Redis 连接已关闭")
    except Exception as e:
        logger.error(f"✗ 关闭 Redis 连接失败: {str(e)}")

    logger.info("👋 应用已关闭")


# ==================== 异常渲染 ====================

def render_api_error(request: Request, exc: BaseAPIException) -> JSONResponse:
    """按请求路径选择调用方方言的错误结构"""
    path = request.url.path
    if path.startswith("/v1/messages"):
        content = exc.to_anthropic_dict()
    elif path.startswith("/v1beta"):
        content = exc.to_gemini_dict()
    else:
        content = exc.to_dict()

    headers = {}
    if isinstance(exc, NoEligibleAccountError):
        headers["Retry-After"] = str(NO_ACCOUNT_RETRY_AFTER_SECONDS)
    elif isinstance(exc, UpstreamAPIError) and exc.retry_after_seconds:
        headers["Retry-After"] = str(math.ceil(exc.retry_after_seconds))

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers or None)


# ==================== 创建 FastAPI 应用 ====================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    创建并配置 FastAPI 应用

    Returns:
        配置好的 FastAPI 应用实例
    """
    settings = settings or get_settings()

    # 生产环境禁用API文档
    docs_url = "/api/docs" if settings.is_development else None
    redoc_url = "/api/redoc" if settings.is_development else None
    openapi_url = "/api/openapi.json" if settings.is_development else None

    app = FastAPI(
        title="Antigravity Gateway",
        description="OpenAI / Anthropic / Gemini 兼容的大模型网关，后端为 Antigravity 账号池",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=docs_url,
        redoc_url=redoc_url,
        openapi_url=openapi_url
    )

    # ==================== CORS 配置 ====================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== 注册路由 ====================

    app.include_router(health_router)
    app.include_router(openai_router)  # /v1/chat/completions, /v1/models
    app.include_router(anthropic_router)  # /v1/messages
    app.include_router(gemini_router)  # /v1beta/models/{model}:generateContent
    app.include_router(admin_router)  # /admin/*
    app.include_router(oauth_router)  # /oauth/*

    # ==================== 异常处理器 ====================

    @app.exception_handler(BaseAPIException)
    async def api_exception_handler(request: Request, exc: BaseAPIException):
        """处理自定义 API 异常"""
        return render_api_error(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理数据验证异常（不记录请求体，避免泄露内容）"""
        error_messages = []
        for error in exc.errors():
            loc = " -> ".join(str(item) for item in error.get("loc", []))
            error_messages.append(f"{loc}: {error.get('msg', 'Unknown error')}")
        logger.warning(f"请求验证失败 - {request.method} {request.url.path}: {error_messages}")
        return render_api_error(
            request,
            InvalidRequestError(f"请求验证失败: {'; '.join(error_messages)}"),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """处理通用异常"""
        logger.error(f"未处理的异常: {type(exc).__name__}: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "message": "服务器内部错误",
                    "type": "api_error",
                    "code": "internal_server_error",
                }
            },
        )

    return app


# 创建应用实例
app = create_app()


# ==================== 开发服务器 ====================

if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )
