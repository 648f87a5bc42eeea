"""
Anthropic格式转换器服务
将上游（cloudcode-pa）响应转换为 Anthropic Messages API 的响应与流式事件
"""
from typing import Optional, Dict, Any, List, Union
import json
import uuid
import logging

from app.schemas.anthropic import (
    AnthropicMessagesResponse,
    AnthropicUsage,
    AnthropicResponseTextContent,
    AnthropicResponseThinkingContent,
    AnthropicResponseToolUseContent,
)
from app.utils.antigravity_converters import (
    UsageTally,
    extract_usage,
    first_candidate,
    is_thought_part,
    parse_upstream_event,
    unwrap_upstream_response,
)

logger = logging.getLogger(__name__)


def anthropic_sse(event: Dict[str, Any]) -> bytes:
    """事件 dict -> `event: <type>\\ndata: <json>\\n\\n`"""
    return f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n".encode("utf-8")


def _tool_use_id(function_call: Dict[str, Any]) -> str:
    return str(function_call.get("id") or f"toolu_{uuid.uuid4().hex[:24]}")


def _anthropic_usage(usage: UsageTally) -> Dict[str, int]:
    # Anthropic 的 output_tokens 包含思考部分
    return {
        "input_tokens": usage.prompt_tokens,
        "output_tokens": usage.completion_tokens + usage.thinking_tokens,
    }


class AnthropicAdapter:
    """
    Anthropic格式适配器
    负责 上游 -> Anthropic 的非流式转换
    """

    # 上游 finishReason -> Anthropic stop_reason
    STOP_REASON_FROM_UPSTREAM = {
        "STOP": "end_turn",
        "MAX_TOKENS": "max_tokens",
        "SAFETY": "refusal",
        "RECITATION": "refusal",
        "BLOCKLIST": "refusal",
        "PROHIBITED_CONTENT": "refusal",
        "SPII": "refusal",
    }

    @classmethod
    def stop_reason(cls, finish_reason: Optional[str], *, has_tool_use: bool = False) -> str:
        if has_tool_use:
            return "tool_use"
        return cls.STOP_REASON_FROM_UPSTREAM.get((finish_reason or "").upper(), "end_turn")

    @classmethod
    def upstream_to_anthropic_response(
        cls,
        raw: Dict[str, Any],
        request_id: str,
        model: str,
        include_thinking: bool,
    ) -> Dict[str, Any]:
        """
        将上游非流式响应转换为Anthropic格式

        思考内容只在 include_thinking 时以 thinking 块输出（放在正文之前，签名原样带回）。
        """
        response = unwrap_upstream_response(raw) or {}
        parts, finish = first_candidate(response)

        content: List[Any] = []
        for part in parts:
            text = part.get("text")
            function_call = part.get("functionCall")
            if isinstance(text, str):
                if is_thought_part(part):
                    if include_thinking:
                        content.append(
                            AnthropicResponseThinkingContent(
                                thinking=text,
                                signature=part.get("thoughtSignature"),
                            )
                        )
                    continue
                if content and isinstance(content[-1], AnthropicResponseTextContent):
                    content[-1].text += text
                else:
                    content.append(AnthropicResponseTextContent(text=text))
            elif isinstance(function_call, dict) and function_call.get("name"):
                args = function_call.get("args")
                content.append(
                    AnthropicResponseToolUseContent(
                        id=_tool_use_id(function_call),
                        name=function_call["name"],
                        input=args if isinstance(args, dict) else {},
                    )
                )

        has_tool_use = any(isinstance(block, AnthropicResponseToolUseContent) for block in content)

        # 如果没有内容，添加空文本
        if not content:
            content.append(AnthropicResponseTextContent(text=""))

        usage = _anthropic_usage(extract_usage(response))
        anthropic_response = AnthropicMessagesResponse(
            id=f"msg_{request_id}",
            model=model,
            content=content,
            stop_reason=cls.stop_reason(finish, has_tool_use=has_tool_use),
            usage=AnthropicUsage(**usage),
        )
        return anthropic_response.model_dump()


class AnthropicStreamTranslator:
    """
    上游 SSE 事件 -> Anthropic 流式事件

    每个上游事件独立解析；跨事件只保留当前打开的 content block（类型 + 索引），
    用来决定是继续追加 delta 还是先关闭再开新块。
    """

    def __init__(self, request_id: str, model: str, include_thinking: bool):
        self.message_id = f"msg_{request_id}"
        self.model = model
        self.include_thinking = include_thinking
        self._next_index = 0
        self._open_type: Optional[str] = None
        self._has_tool_use = False
        self._usage = UsageTally()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def start(self) -> List[Dict[str, Any]]:
        return [
            {
                "type": "message_start",
                "message": {
                    "id": self.message_id,
                    "type": "message",
                    "role": "assistant",
                    "content": [],
                    "model": self.model,
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": 0, "output_tokens": 0},
                },
            }
        ]

    def _close_block(self) -> List[Dict[str, Any]]:
        if self._open_type is None:
            return []
        event = {"type": "content_block_stop", "index": self._next_index - 1}
        self._open_type = None
        return [event]

    def _ensure_block(self, block_type: str) -> List[Dict[str, Any]]:
        if self._open_type == block_type:
            return []
        events = self._close_block()
        block: Dict[str, Any] = {"type": block_type, block_type: ""}
        if block_type == "thinking":
            block["signature"] = ""
        events.append({"type": "content_block_start", "index": self._next_index, "content_block": block})
        self._open_type = block_type
        self._next_index += 1
        return events

    def _current_index(self) -> int:
        return self._next_index - 1

    def feed(self, event: Union[str, bytes, Dict[str, Any]]) -> List[Dict[str, Any]]:
        """无法解析的事件返回空列表"""
        if self._finished:
            return []
        response = parse_upstream_event(event)
        if response is None:
            return []

        usage = extract_usage(response)
        if not usage.is_empty:
            self._usage = usage

        parts, finish = first_candidate(response)
        events: List[Dict[str, Any]] = []
        for part in parts:
            text = part.get("text")
            function_call = part.get("functionCall")

            if isinstance(text, str) and is_thought_part(part):
                if not self.include_thinking:
                    continue
                events.extend(self._ensure_block("thinking"))
                if text:
                    events.append(
                        {
                            "type": "content_block_delta",
                            "index": self._current_index(),
                            "delta": {"type": "thinking_delta", "thinking": text},
                        }
                    )
                signature = part.get("thoughtSignature")
                if isinstance(signature, str) and signature:
                    events.append(
                        {
                            "type": "content_block_delta",
                            "index": self._current_index(),
                            "delta": {"type": "signature_delta", "signature": signature},
                        }
                    )
                continue

            if isinstance(text, str) and text != "":
                events.extend(self._ensure_block("text"))
                events.append(
                    {
                        "type": "content_block_delta",
                        "index": self._current_index(),
                        "delta": {"type": "text_delta", "text": text},
                    }
                )
                continue

            if isinstance(function_call, dict) and function_call.get("name"):
                self._has_tool_use = True
                events.extend(self._close_block())
                index = self._next_index
                self._next_index += 1
                args = function_call.get("args")
                events.append(
                    {
                        "type": "content_block_start",
                        "index": index,
                        "content_block": {
                            "type": "tool_use",
                            "id": _tool_use_id(function_call),
                            "name": function_call["name"],
                            "input": {},
                        },
                    }
                )
                events.append(
                    {
                        "type": "content_block_delta",
                        "index": index,
                        "delta": {
                            "type": "input_json_delta",
                            "partial_json": json.dumps(args if isinstance(args, dict) else {}, ensure_ascii=False),
                        },
                    }
                )
                events.append({"type": "content_block_stop", "index": index})

        if finish:
            events.extend(self._terminal(finish))
        return events

    def _terminal(self, finish_reason: Optional[str]) -> List[Dict[str, Any]]:
        events = self._close_block()
        events.append(
            {
                "type": "message_delta",
                "delta": {
                    "stop_reason": AnthropicAdapter.stop_reason(finish_reason, has_tool_use=self._has_tool_use),
                    "stop_sequence": None,
                },
                "usage": _anthropic_usage(self._usage),
            }
        )
        events.append({"type": "message_stop"})
        self._finished = True
        return events

    def finish(self) -> List[Dict[str, Any]]:
        """上游流结束但没有给出 finishReason 时补齐收尾事件"""
        if self._finished:
            return []
        return self._terminal(None)
