"""
API 路由模块
"""
from app.api.routes.health import router as health_router
from app.api.routes.openai import router as openai_router
from app.api.routes.anthropic import router as anthropic_router
from app.api.routes.gemini import router as gemini_router
from app.api.routes.admin import router as admin_router
from app.api.routes.oauth import router as oauth_router

__all__ = [
    "health_router",
    "openai_router",
    "anthropic_router",
    "gemini_router",
    "admin_router",
    "oauth_router",
]
