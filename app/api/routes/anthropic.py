"""
Anthropic 兼容 API
- POST /v1/messages
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.api.deps import get_dispatcher, verify_api_key
from app.schemas.anthropic import AnthropicMessagesRequest
from app.schemas.dialects import Dialect, ExternalRequest
from app.services.dispatcher import RequestDispatcher
from app.utils.antigravity_converters import resolve_thinking_budget

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Anthropic兼容API"], dependencies=[Depends(verify_api_key)])


@router.post(
    "/messages",
    summary="Anthropic Messages",
    description="Anthropic Messages API 兼容接口，支持 x-api-key / anthropic-api-key / Bearer 认证。",
)
async def create_message(
    request: AnthropicMessagesRequest,
    dispatcher: RequestDispatcher = Depends(get_dispatcher),
):
    payload = request.model_dump(exclude_none=True)
    external = ExternalRequest(
        dialect=Dialect.ANTHROPIC,
        model=request.model,
        payload=payload,
        stream=request.stream,
        thinking_budget=resolve_thinking_budget(Dialect.ANTHROPIC, payload),
    )

    if request.stream:
        body = await dispatcher.dispatch_stream(external)
        return StreamingResponse(
            body,
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )
    return await dispatcher.dispatch(external)
