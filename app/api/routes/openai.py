"""
OpenAI 兼容 API
- POST /v1/chat/completions
- GET  /v1/models
- GET  /v1/models/{model_id}
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from app.api.deps import get_dispatcher, verify_api_key
from app.core.exceptions import InvalidRequestError
from app.schemas.dialects import Dialect, ExternalRequest
from app.schemas.openai import ChatCompletionRequest
from app.services.dispatcher import RequestDispatcher
from app.utils.antigravity_converters import get_model, list_models, resolve_thinking_budget

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["OpenAI兼容API"], dependencies=[Depends(verify_api_key)])


@router.get("/models", summary="模型列表")
async def list_openai_models():
    return list_models()


@router.get("/models/{model_id}", summary="模型详情")
async def retrieve_openai_model(model_id: str):
    model = get_model(model_id)
    if model is None:
        raise InvalidRequestError(
            f"The model '{model_id}' does not exist",
            status_code=404,
            error_code="model_not_found",
        )
    return model


@router.post("/chat/completions", summary="Chat Completions")
async def chat_completions(
    request: ChatCompletionRequest,
    dispatcher: RequestDispatcher = Depends(get_dispatcher),
):
    payload = request.model_dump(exclude_none=True)
    external = ExternalRequest(
        dialect=Dialect.OPENAI,
        model=request.model,
        payload=payload,
        stream=request.stream,
        thinking_budget=resolve_thinking_budget(Dialect.OPENAI, payload),
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
