"""
OAuth 授权接口（管理员）
- GET  /oauth/config：生成授权链接
- POST /oauth/exchange：用回调里的 code 换 token 并注册账号
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from app.api.deps import get_oauth_service, verify_admin
from app.services.oauth_service import OAuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["OAuth"], dependencies=[Depends(verify_admin)])


class OAuthExchangeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    port: Optional[int] = Field(None, ge=1, le=65535, description="本地回调端口")


@router.get("/config", summary="获取授权链接")
async def get_oauth_config(
    port: Optional[int] = Query(None, ge=1, le=65535),
    service: OAuthService = Depends(get_oauth_service),
):
    try:
        return await service.get_config(port)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/exchange", summary="交换授权码并添加账号", status_code=status.HTTP_201_CREATED)
async def exchange_oauth_code(
    request: OAuthExchangeRequest,
    service: OAuthService = Depends(get_oauth_service),
):
    try:
        return await service.exchange(request.code, request.state, request.port)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
