"""
OpenAI Chat Completions 请求格式
只校验网关关心的字段，其余字段原样保留
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ChatCompletionRequest(BaseModel):
    """POST /v1/chat/completions"""

    model: str = Field(..., description="模型名称")
    messages: List[Dict[str, Any]] = Field(..., min_length=1, description="消息列表")
    stream: bool = Field(False, description="是否流式输出")

    temperature: Optional[float] = Field(None, ge=0, le=2)
    top_p: Optional[float] = Field(None, ge=0, le=1)
    top_k: Optional[int] = Field(None, ge=0)
    max_tokens: Optional[int] = Field(None, gt=0)
    max_completion_tokens: Optional[int] = Field(None, gt=0)
    n: Optional[int] = Field(None, ge=1)
    stop: Optional[Union[str, List[str]]] = None

    reasoning_effort: Optional[str] = Field(None, description="low / medium / high")
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None

    model_config = {"extra": "allow"}
