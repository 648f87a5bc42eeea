"""
Gemini 兼容 API（v1beta）
- POST /v1beta/models/{model}:generateContent
- POST /v1beta/models/{model}:streamGenerateContent（始终以 SSE 输出）
- GET  /v1beta/models
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.api.deps import get_dispatcher, verify_api_key
from app.schemas.dialects import Dialect, ExternalRequest
from app.schemas.gemini import GenerateContentRequest
from app.services.dispatcher import RequestDispatcher
from app.utils.antigravity_converters import list_gemini_models, resolve_thinking_budget

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1beta", tags=["Gemini兼容API"], dependencies=[Depends(verify_api_key)])


def _external_request(model: str, request: GenerateContentRequest, stream: bool) -> ExternalRequest:
    payload = request.model_dump(exclude_none=True)
    return ExternalRequest(
        dialect=Dialect.GEMINI,
        model=model,
        payload=payload,
        stream=stream,
        thinking_budget=resolve_thinking_budget(Dialect.GEMINI, payload),
    )


@router.get("/models", summary="Gemini 模型列表")
async def list_models_v1beta():
    return list_gemini_models()


@router.post("/models/{model}:generateContent", summary="Gemini v1beta generateContent")
async def generate_content(
    model: str,
    request: GenerateContentRequest,
    dispatcher: RequestDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.dispatch(_external_request(model, request, stream=False))


@router.post("/models/{model}:streamGenerateContent", summary="Gemini v1beta streamGenerateContent")
async def stream_generate_content(
    model: str,
    request: GenerateContentRequest,
    dispatcher: RequestDispatcher = Depends(get_dispatcher),
):
    body = await dispatcher.dispatch_stream(_external_request(model, request, stream=True))
    return StreamingResponse(
        body,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
