"""
Anthropic Messages 请求 / 响应格式
请求侧只校验网关转换时依赖的字段，内容块保持原始 dict 交给转换器；
响应侧由 AnthropicAdapter 构造后 model_dump 输出
"""
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

StopReason = Literal["end_turn", "max_tokens", "stop_sequence", "tool_use", "refusal"]


def _check_blocks(blocks: List[Any], where: str) -> List[Any]:
    for index, block in enumerate(blocks):
        if not isinstance(block, dict) or not isinstance(block.get("type"), str):
            raise ValueError(f"{where}[{index}] 缺少 type 字段")
    return blocks


class AnthropicMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value):
        if isinstance(value, list):
            return _check_blocks(value, "content")
        return value


class AnthropicTool(BaseModel):
    """工具定义；input_schema 缺省时按空对象处理"""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    input_schema: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    model_config = {"extra": "allow"}


class AnthropicMessagesRequest(BaseModel):
    """POST /v1/messages"""

    model: str = Field(..., description="模型名称")
    messages: List[AnthropicMessage] = Field(..., min_length=1, description="消息列表")
    max_tokens: int = Field(..., gt=0, description="最大生成token数")
    stream: bool = Field(False, description="是否流式输出")

    system: Optional[Union[str, List[Dict[str, Any]]]] = Field(None, description="系统提示，字符串或 text 块列表")
    stop_sequences: Optional[List[str]] = None
    temperature: Optional[float] = Field(None, ge=0, le=1)
    top_p: Optional[float] = Field(None, ge=0, le=1)
    top_k: Optional[int] = Field(None, ge=0)

    # {"type": "enabled", "budget_tokens": N}；兼容部分客户端传 true / "enabled"
    thinking: Optional[Union[Dict[str, Any], bool, str]] = None

    tools: Optional[List[AnthropicTool]] = None
    tool_choice: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None

    model_config = {"extra": "allow"}

    @field_validator("system")
    @classmethod
    def _validate_system(cls, value):
        if isinstance(value, list):
            return _check_blocks(value, "system")
        return value


# ==================== 响应 ====================

class AnthropicUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class AnthropicResponseTextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class AnthropicResponseThinkingContent(BaseModel):
    """思考块；signature 为上游 thoughtSignature，客户端回放时需原样带回"""

    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: Optional[str] = None


class AnthropicResponseToolUseContent(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: Dict[str, Any] = Field(default_factory=dict)


AnthropicResponseContentBlock = Union[
    AnthropicResponseTextContent,
    AnthropicResponseThinkingContent,
    AnthropicResponseToolUseContent,
]


class AnthropicMessagesResponse(BaseModel):
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    content: List[AnthropicResponseContentBlock]
    model: str
    stop_reason: Optional[StopReason] = None
    stop_sequence: Optional[str] = None
    usage: AnthropicUsage
