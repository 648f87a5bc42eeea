"""
Antigravity（cloudcode-pa v1internal）协议转换

- OpenAI / Anthropic / Gemini 请求 -> 上游 envelope
- 上游响应 / SSE 事件 -> OpenAI、Gemini 响应与 chunk（Anthropic 输出见 app.services.anthropic_adapter）
- usage 提取、模型列表

这里的函数都是同步纯函数：不做 IO，不修改入参。
"""

from __future__ import annotations

import copy
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import uuid4

from app.core.exceptions import InvalidRequestError
from app.schemas.dialects import Dialect, ExternalRequest

SKIP_THOUGHT_SIGNATURE = "skip_thought_signature_validator"

DEFAULT_THINKING_BUDGET = 8192
THINKING_BUDGET_BY_EFFORT = {
    "minimal": 512,
    "low": 1024,
    "medium": 8192,
    "high": 24576,
}

# Gemini finishReason -> OpenAI finish_reason
OPENAI_FINISH_REASON = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
}

MODEL_CATALOG_CREATED = 1735689600
MODEL_CATALOG: Tuple[Tuple[str, str], ...] = (
    ("gemini-2.5-flash", "google"),
    ("gemini-2.5-flash-lite", "google"),
    ("gemini-2.5-flash-thinking", "google"),
    ("gemini-2.5-pro", "google"),
    ("gemini-3-pro-low", "google"),
    ("gemini-3-pro-high", "google"),
    ("gemini-3-pro-image", "google"),
    ("claude-sonnet-4-5", "anthropic"),
    ("claude-sonnet-4-5-thinking", "anthropic"),
    ("claude-opus-4-5-thinking", "anthropic"),
    ("gpt-oss-120b-medium", "openai"),
)


# ==================== 通用 ====================


def new_request_id() -> str:
    return f"agent-{uuid4()}"


def _safe_json_loads(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    s = value.strip()
    if not s:
        return value
    try:
        return json.loads(s)
    except ValueError:
        return value


def sse_data(payload: Any) -> bytes:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


OPENAI_DONE_SSE = b"data: [DONE]\n\n"


def is_thought_part(part: Dict[str, Any]) -> bool:
    return bool(part.get("thought"))


def _is_signature_only(part: Dict[str, Any]) -> bool:
    """只有 thoughtSignature、没有任何内容的 part（直接跳过）"""
    signature = part.get("thoughtSignature") or part.get("thought_signature")
    if not (isinstance(signature, str) and signature.strip()):
        return False
    has_payload = (
        part.get("text") is not None
        or part.get("functionCall") is not None
        or part.get("inlineData") is not None
    )
    return not has_payload


def unwrap_upstream_response(obj: Any) -> Optional[Dict[str, Any]]:
    """上游响应形如 {"response": {...}}；同时兼容未包装的 Gemini 响应"""
    if not isinstance(obj, dict):
        return None
    inner = obj.get("response")
    if isinstance(inner, dict):
        return inner
    if "candidates" in obj or "usageMetadata" in obj:
        return obj
    return None


def parse_upstream_event(data: Union[str, bytes, Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """SSE data 字段 -> 解包后的 response；无法解析时返回 None"""
    if isinstance(data, (str, bytes)):
        try:
            obj = json.loads(data)
        except ValueError:
            return None
    else:
        obj = data
    return unwrap_upstream_response(obj)


def first_candidate(response: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """返回 (parts, finishReason)"""
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return [], None
    first = candidates[0]
    parts: List[Dict[str, Any]] = []
    content = first.get("content")
    if isinstance(content, dict) and isinstance(content.get("parts"), list):
        parts = [p for p in content["parts"] if isinstance(p, dict)]
    finish = first.get("finishReason")
    finish_reason = finish.strip() if isinstance(finish, str) and finish.strip() else None
    return parts, finish_reason


def _function_args_to_str(args: Any) -> str:
    if isinstance(args, (dict, list)):
        return json.dumps(args, ensure_ascii=False, separators=(",", ":"))
    if isinstance(args, str):
        return args
    return "{}"


def _next_tool_call_id() -> str:
    return f"call_{uuid4().hex[:24]}"


# ==================== usage ====================


@dataclass(frozen=True)
class UsageTally:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    thinking_tokens: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "thinkingTokens": self.thinking_tokens,
        }

    @property
    def is_empty(self) -> bool:
        return not (self.prompt_tokens or self.completion_tokens or self.total_tokens or self.thinking_tokens)


def _int_or_zero(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def extract_usage(obj: Any) -> UsageTally:
    """
    从上游响应（或单个 SSE 事件，或 usageMetadata 本身）提取 token 用量

    流式与非流式共用这一个入口。
    """
    if isinstance(obj, (str, bytes)):
        obj = _safe_json_loads(obj.decode("utf-8") if isinstance(obj, bytes) else obj)
    if not isinstance(obj, dict):
        return UsageTally()

    response = unwrap_upstream_response(obj)
    usage = response.get("usageMetadata") if response is not None else None
    if usage is None and ("promptTokenCount" in obj or "totalTokenCount" in obj):
        usage = obj
    if not isinstance(usage, dict):
        return UsageTally()

    prompt = _int_or_zero(usage.get("promptTokenCount"))
    completion = _int_or_zero(usage.get("candidatesTokenCount"))
    thoughts = _int_or_zero(usage.get("thoughtsTokenCount"))
    total = _int_or_zero(usage.get("totalTokenCount")) or (prompt + completion + thoughts)
    return UsageTally(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        thinking_tokens=thoughts,
    )


def _openai_usage(usage: UsageTally) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }
    if usage.thinking_tokens:
        out["completion_tokens_details"] = {"reasoning_tokens": usage.thinking_tokens}
    return out


# ==================== 模型列表 ====================


def list_models() -> Dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {"id": model_id, "object": "model", "created": MODEL_CATALOG_CREATED, "owned_by": owner}
            for model_id, owner in MODEL_CATALOG
        ],
    }


def get_model(model_id: str) -> Optional[Dict[str, Any]]:
    for known_id, owner in MODEL_CATALOG:
        if known_id == model_id:
            return {"id": known_id, "object": "model", "created": MODEL_CATALOG_CREATED, "owned_by": owner}
    return None


def list_gemini_models() -> Dict[str, Any]:
    return {
        "models": [
            {
                "name": f"models/{model_id}",
                "displayName": model_id,
                "supportedGenerationMethods": ["generateContent", "streamGenerateContent"],
            }
            for model_id, _ in MODEL_CATALOG
        ]
    }


# ==================== 思考预算 ====================


def resolve_thinking_budget(dialect: Dialect, payload: Dict[str, Any]) -> Optional[int]:
    """
    判断调用方是否请求了思考内容；请求了则返回预算 token 数

    - OpenAI：reasoning_effort 或以 -thinking 结尾的模型名
    - Anthropic：thinking={"type": "enabled", "budget_tokens": N}
    - Gemini：generationConfig.thinkingConfig.includeThoughts=true
    """
    if dialect is Dialect.OPENAI:
        effort = payload.get("reasoning_effort")
        if isinstance(effort, str) and effort.strip().lower() in THINKING_BUDGET_BY_EFFORT:
            return THINKING_BUDGET_BY_EFFORT[effort.strip().lower()]
        model = str(payload.get("model") or "")
        if model.endswith("-thinking"):
            return DEFAULT_THINKING_BUDGET
        return None

    if dialect is Dialect.ANTHROPIC:
        thinking = payload.get("thinking")
        if thinking is True or (isinstance(thinking, str) and thinking.strip().lower() == "enabled"):
            return DEFAULT_THINKING_BUDGET
        if isinstance(thinking, dict) and str(thinking.get("type") or "").lower() == "enabled":
            budget = thinking.get("budget_tokens")
            return int(budget) if isinstance(budget, int) and budget > 0 else DEFAULT_THINKING_BUDGET
        return None

    generation_config = payload.get("generationConfig") or payload.get("generation_config") or {}
    thinking_config = generation_config.get("thinkingConfig") if isinstance(generation_config, dict) else None
    if isinstance(thinking_config, dict) and thinking_config.get("includeThoughts"):
        budget = thinking_config.get("thinkingBudget")
        return int(budget) if isinstance(budget, int) and budget > 0 else DEFAULT_THINKING_BUDGET
    return None


def _thinking_config(budget: int) -> Dict[str, Any]:
    return {"includeThoughts": True, "thinkingBudget": budget}


def _default_safety_settings() -> List[Dict[str, str]]:
    return [
        {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "OFF"},
        {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "OFF"},
        {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "OFF"},
        {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "OFF"},
        {"category": "HARM_CATEGORY_CIVIC_INTEGRITY", "threshold": "BLOCK_NONE"},
    ]


# ==================== Anthropic 预处理 ====================


def preprocess_anthropic_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    上游不接受空文本块，也不接受空的 content 数组：
    - 空字符串 content -> " "
    - 空文本块 -> " "（保留块，不删除）
    - 空 content 数组 -> [{"type": "text", "text": " "}]

    返回新对象；对已处理过的结果再处理一次结果不变。
    """
    out = copy.deepcopy(payload)
    messages = out.get("messages")
    if not isinstance(messages, list):
        return out

    for message in messages:
        if not isinstance(message, dict):
            continue
        content = message.get("content")
        if isinstance(content, str):
            if content == "":
                message["content"] = " "
            continue
        if not isinstance(content, list):
            continue
        if not content:
            message["content"] = [{"type": "text", "text": " "}]
            continue
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text" and not block.get("text"):
                block["text"] = " "
    return out


# ==================== 请求 -> envelope ====================


def _data_url_to_inline_data(url: str) -> Optional[Dict[str, Any]]:
    """data:<mime>;base64,<payload>"""
    raw = (url or "").strip()
    if not raw.startswith("data:"):
        return None
    without_prefix = raw[5:]
    if ";base64," not in without_prefix:
        return None
    mime, b64 = without_prefix.split(";base64,", 1)
    mime = (mime or "").strip() or "image/png"
    b64 = (b64 or "").strip()
    if not b64:
        return None
    # cloudcode-pa 使用 mime_type（snake_case）
    return {"inlineData": {"mime_type": mime, "data": b64}, "thoughtSignature": SKIP_THOUGHT_SIGNATURE}


def _text_of(content: Any) -> str:
    """system 字段 / OpenAI content -> 纯文本"""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return str(content.get("text") or "") if content.get("type", "text") == "text" else ""
    if isinstance(content, list):
        return "\n".join(_text_of(item) for item in content if _text_of(item))
    return ""


def _openai_content_to_parts(content: Any) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    if isinstance(content, str):
        if content:
            parts.append({"text": content})
        return parts
    if not isinstance(content, list):
        return parts
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = (item.get("type") or "").strip()
        if item_type == "text" and item.get("text"):
            parts.append({"text": item["text"]})
        elif item_type == "image_url":
            image_url = item.get("image_url")
            url = image_url.get("url") if isinstance(image_url, dict) else image_url
            inline = _data_url_to_inline_data(str(url or ""))
            if inline:
                parts.append(inline)
    return parts


def _openai_tools_to_upstream(tools: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(tools, list) or not tools:
        return None
    declarations: List[Dict[str, Any]] = []
    for tool in tools:
        if not isinstance(tool, dict) or tool.get("type") != "function":
            continue
        fn = tool.get("function")
        if not isinstance(fn, dict) or not fn.get("name"):
            continue
        declarations.append(
            {
                "name": fn["name"],
                "description": fn.get("description") or "",
                "parametersJsonSchema": fn.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    return [{"functionDeclarations": declarations}] if declarations else None


def _tool_config(mode: str, names: Optional[List[str]] = None) -> Dict[str, Any]:
    cfg: Dict[str, Any] = {"mode": mode}
    if names:
        cfg["allowedFunctionNames"] = names
    return {"functionCallingConfig": cfg}


def _openai_tool_choice(tool_choice: Any) -> Optional[Dict[str, Any]]:
    if tool_choice == "none":
        return _tool_config("NONE")
    if tool_choice == "required":
        return _tool_config("ANY")
    if tool_choice == "auto":
        return _tool_config("AUTO")
    if isinstance(tool_choice, dict):
        fn = tool_choice.get("function") or {}
        if isinstance(fn, dict) and fn.get("name"):
            return _tool_config("ANY", [fn["name"]])
    return None


def _openai_messages_to_contents(
    messages: List[Dict[str, Any]],
) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
    """OpenAI messages -> (systemInstruction, contents)"""
    tool_names: Dict[str, str] = {}
    system_parts: List[Dict[str, Any]] = []
    contents: List[Dict[str, Any]] = []

    non_system = [m for m in messages if isinstance(m, dict) and m.get("role") not in ("system", "developer")]

    for message in messages:
        if not isinstance(message, dict):
            continue
        role = (message.get("role") or "").strip()
        content = message.get("content")

        if role in ("system", "developer") and non_system:
            text = _text_of(content)
            if text:
                system_parts.append({"text": text})
            continue

        if role == "assistant":
            node: Dict[str, Any] = {"role": "model", "parts": _openai_content_to_parts(content)}
            for tool_call in message.get("tool_calls") or []:
                if not isinstance(tool_call, dict) or tool_call.get("type", "function") != "function":
                    continue
                fn = tool_call.get("function") if isinstance(tool_call.get("function"), dict) else {}
                name = (fn.get("name") or "").strip()
                if not name:
                    continue
                if tool_call.get("id"):
                    tool_names[str(tool_call["id"])] = name
                args = _safe_json_loads(fn.get("arguments"))
                node["parts"].append(
                    {
                        "functionCall": {"name": name, "args": args if isinstance(args, dict) else {}},
                        "thoughtSignature": SKIP_THOUGHT_SIGNATURE,
                    }
                )
            if node["parts"]:
                contents.append(node)
            continue

        if role == "tool":
            call_id = str(message.get("tool_call_id") or "")
            response_part = {
                "functionResponse": {
                    "name": tool_names.get(call_id) or str(message.get("name") or "tool"),
                    "response": {"result": _safe_json_loads(_text_of(content))},
                }
            }
            # 连续的 tool 消息合并进同一个 user 节点
            if contents and contents[-1].get("_tool_results"):
                contents[-1]["parts"].append(response_part)
            else:
                contents.append({"role": "user", "parts": [response_part], "_tool_results": True})
            continue

        parts = _openai_content_to_parts(content)
        if parts:
            contents.append({"role": "user", "parts": parts})

    for node in contents:
        node.pop("_tool_results", None)

    system_instruction = {"role": "user", "parts": system_parts} if system_parts else None
    return system_instruction, contents


def _openai_generation_config(payload: Dict[str, Any]) -> Dict[str, Any]:
    gen_cfg: Dict[str, Any] = {}
    if isinstance(payload.get("temperature"), (int, float)):
        gen_cfg["temperature"] = payload["temperature"]
    if isinstance(payload.get("top_p"), (int, float)):
        gen_cfg["topP"] = payload["top_p"]
    if isinstance(payload.get("top_k"), int):
        gen_cfg["topK"] = payload["top_k"]
    if isinstance(payload.get("n"), int) and payload["n"] > 1:
        gen_cfg["candidateCount"] = payload["n"]
    max_tokens = payload.get("max_completion_tokens") or payload.get("max_tokens")
    if isinstance(max_tokens, int) and max_tokens > 0:
        gen_cfg["maxOutputTokens"] = max_tokens

    stop = payload.get("stop")
    if isinstance(stop, str) and stop:
        gen_cfg["stopSequences"] = [stop]
    elif isinstance(stop, list):
        sequences = [str(s) for s in stop if str(s)]
        if sequences:
            gen_cfg["stopSequences"] = sequences
    return gen_cfg


def _openai_request_body(payload: Dict[str, Any]) -> Dict[str, Any]:
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError("messages must be a non-empty array")

    system_instruction, contents = _openai_messages_to_contents(messages)
    if not contents:
        raise InvalidRequestError("messages contain no usable content")

    body: Dict[str, Any] = {"contents": contents, "generationConfig": _openai_generation_config(payload)}
    if system_instruction:
        body["systemInstruction"] = system_instruction
    tools = _openai_tools_to_upstream(payload.get("tools"))
    if tools:
        body["tools"] = tools
        tool_config = _openai_tool_choice(payload.get("tool_choice"))
        if tool_config:
            body["toolConfig"] = tool_config
    return body


def _anthropic_block_to_part(block: Dict[str, Any], tool_names: Dict[str, str]) -> Optional[Dict[str, Any]]:
    block_type = block.get("type")
    if block_type == "text":
        return {"text": block.get("text") or " "}
    if block_type == "image":
        source = block.get("source") or {}
        if source.get("type") == "base64" and source.get("data"):
            return {
                "inlineData": {"mime_type": source.get("media_type") or "image/png", "data": source["data"]},
                "thoughtSignature": SKIP_THOUGHT_SIGNATURE,
            }
        return None
    if block_type == "thinking":
        signature = block.get("signature")
        if not signature:
            # 没有签名的 thinking 块无法回放给上游
            return None
        return {"text": block.get("thinking") or "", "thought": True, "thoughtSignature": signature}
    if block_type == "tool_use":
        name = str(block.get("name") or "")
        function_call: Dict[str, Any] = {"name": name, "args": block.get("input") or {}}
        if block.get("id"):
            tool_names[str(block["id"])] = name
            function_call["id"] = block["id"]
        return {"functionCall": function_call, "thoughtSignature": SKIP_THOUGHT_SIGNATURE}
    if block_type == "tool_result":
        tool_use_id = str(block.get("tool_use_id") or "")
        result: Any = _text_of(block.get("content"))
        function_response: Dict[str, Any] = {
            "name": tool_names.get(tool_use_id, "tool"),
            "response": {"error": result} if block.get("is_error") else {"result": result},
        }
        if tool_use_id:
            function_response["id"] = tool_use_id
        return {"functionResponse": function_response}
    return None


def _anthropic_tool_choice(tool_choice: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(tool_choice, dict):
        return None
    choice_type = tool_choice.get("type")
    if choice_type == "none":
        return _tool_config("NONE")
    if choice_type == "any":
        return _tool_config("ANY")
    if choice_type == "tool" and tool_choice.get("name"):
        return _tool_config("ANY", [tool_choice["name"]])
    if choice_type == "auto":
        return _tool_config("AUTO")
    return None


def _anthropic_request_body(payload: Dict[str, Any]) -> Dict[str, Any]:
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise InvalidRequestError("messages must be a non-empty array")

    tool_names: Dict[str, str] = {}
    contents: List[Dict[str, Any]] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        role = "model" if message.get("role") == "assistant" else "user"
        content = message.get("content")
        if isinstance(content, str):
            parts = [{"text": content}]
        else:
            parts = []
            for block in content or []:
                if isinstance(block, dict):
                    part = _anthropic_block_to_part(block, tool_names)
                    if part is not None:
                        parts.append(part)
        if not parts:
            parts = [{"text": " "}]
        contents.append({"role": role, "parts": parts})

    gen_cfg: Dict[str, Any] = {}
    if isinstance(payload.get("max_tokens"), int):
        gen_cfg["maxOutputTokens"] = payload["max_tokens"]
    if isinstance(payload.get("temperature"), (int, float)):
        gen_cfg["temperature"] = payload["temperature"]
    if isinstance(payload.get("top_p"), (int, float)):
        gen_cfg["topP"] = payload["top_p"]
    if isinstance(payload.get("top_k"), int):
        gen_cfg["topK"] = payload["top_k"]
    if payload.get("stop_sequences"):
        gen_cfg["stopSequences"] = list(payload["stop_sequences"])

    body: Dict[str, Any] = {"contents": contents, "generationConfig": gen_cfg}
    system_text = _text_of(payload.get("system"))
    if system_text:
        body["systemInstruction"] = {"role": "user", "parts": [{"text": system_text}]}

    declarations = []
    for tool in payload.get("tools") or []:
        if isinstance(tool, dict) and tool.get("name"):
            declarations.append(
                {
                    "name": tool["name"],
                    "description": tool.get("description") or "",
                    "parametersJsonSchema": tool.get("input_schema") or {"type": "object", "properties": {}},
                }
            )
    if declarations:
        body["tools"] = [{"functionDeclarations": declarations}]
        tool_config = _anthropic_tool_choice(payload.get("tool_choice"))
        if tool_config:
            body["toolConfig"] = tool_config
    return body


def _gemini_request_body(payload: Dict[str, Any]) -> Dict[str, Any]:
    body = copy.deepcopy(payload)
    body.pop("model", None)
    if "systemInstruction" not in body and "system_instruction" in body:
        body["systemInstruction"] = body.pop("system_instruction")
    if "generationConfig" not in body and "generation_config" in body:
        body["generationConfig"] = body.pop("generation_config")

    contents = body.get("contents")
    if not isinstance(contents, list) or not contents:
        raise InvalidRequestError("contents must be a non-empty array")

    system_instruction = body.get("systemInstruction")
    if isinstance(system_instruction, dict):
        body["systemInstruction"] = {"role": "user", "parts": list(system_instruction.get("parts") or [])}
    elif isinstance(system_instruction, str) and system_instruction:
        body["systemInstruction"] = {"role": "user", "parts": [{"text": system_instruction}]}
    else:
        body.pop("systemInstruction", None)

    gen_cfg = body.get("generationConfig")
    body["generationConfig"] = dict(gen_cfg) if isinstance(gen_cfg, dict) else {}
    return body


def build_upstream_envelope(
    request: ExternalRequest,
    *,
    project_id: Optional[str],
    session_id: str,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """ExternalRequest -> cloudcode-pa 请求 envelope"""
    if request.dialect is Dialect.OPENAI:
        body = _openai_request_body(request.payload)
    elif request.dialect is Dialect.ANTHROPIC:
        body = _anthropic_request_body(preprocess_anthropic_request(request.payload))
    elif request.dialect is Dialect.GEMINI:
        body = _gemini_request_body(request.payload)
    else:
        raise InvalidRequestError(f"unsupported dialect: {request.dialect}")

    if request.thinking_budget is not None:
        body["generationConfig"]["thinkingConfig"] = _thinking_config(request.thinking_budget)
    if not body["generationConfig"]:
        body.pop("generationConfig")
    body.setdefault("safetySettings", _default_safety_settings())

    return {
        "project": project_id or "",
        "model": request.model,
        "requestId": request_id or new_request_id(),
        "request": {"sessionId": session_id, **body},
    }


# ==================== 上游 -> OpenAI ====================


def openai_finish_reason(finish_reason: Optional[str], *, has_tool_calls: bool = False) -> str:
    if has_tool_calls:
        return "tool_calls"
    return OPENAI_FINISH_REASON.get((finish_reason or "").upper(), "stop")


def upstream_response_to_openai(
    raw: Dict[str, Any],
    request_id: str,
    model: str,
    include_reasoning: bool,
) -> Dict[str, Any]:
    """上游非流式响应 -> chat.completion"""
    response = unwrap_upstream_response(raw) or {}
    parts, finish = first_candidate(response)

    content_texts: List[str] = []
    reasoning_texts: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    for part in parts:
        if _is_signature_only(part):
            continue
        text = part.get("text")
        if isinstance(text, str):
            if is_thought_part(part):
                if include_reasoning:
                    reasoning_texts.append(text)
            else:
                content_texts.append(text)
            continue
        function_call = part.get("functionCall")
        if isinstance(function_call, dict) and function_call.get("name"):
            tool_calls.append(
                {
                    "id": function_call.get("id") or _next_tool_call_id(),
                    "index": len(tool_calls),
                    "type": "function",
                    "function": {
                        "name": function_call["name"],
                        "arguments": _function_args_to_str(function_call.get("args")),
                    },
                }
            )

    message: Dict[str, Any] = {"role": "assistant", "content": "".join(content_texts)}
    if reasoning_texts:
        message["reasoning_content"] = "".join(reasoning_texts)
    if tool_calls:
        message["tool_calls"] = tool_calls

    return {
        "id": f"chatcmpl-{request_id}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": openai_finish_reason(finish, has_tool_calls=bool(tool_calls)),
            }
        ],
        "usage": _openai_usage(extract_usage(response)),
    }


def _openai_chunk(request_id: str, model: str, created: int, delta: Dict[str, Any], finish_reason: Optional[str]) -> Dict[str, Any]:
    return {
        "id": f"chatcmpl-{request_id}",
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def upstream_event_to_openai_chunks(
    event: Union[str, bytes, Dict[str, Any]],
    request_id: str,
    model: str,
    include_reasoning: bool,
    *,
    tool_call_offset: int = 0,
) -> List[Dict[str, Any]]:
    """
    单个上游 SSE 事件 -> 0..N 个 chat.completion.chunk

    - 正文与思考内容不会出现在同一个 delta 里
    - tool_calls 的 index 从 tool_call_offset 起按出现顺序递增，跨事件由调用方累计
    - 有 finishReason 时，结束 chunk 永远单独追加在内容 chunk 之后
    - 无法解析的事件返回空列表
    """
    response = parse_upstream_event(event)
    if response is None:
        return []

    parts, finish = first_candidate(response)
    created = int(time.time())
    chunks: List[Dict[str, Any]] = []
    tool_call_count = 0

    for part in parts:
        if _is_signature_only(part):
            continue
        text = part.get("text")
        if isinstance(text, str) and text != "":
            if is_thought_part(part):
                if include_reasoning:
                    chunks.append(
                        _openai_chunk(request_id, model, created, {"role": "assistant", "reasoning_content": text}, None)
                    )
            else:
                chunks.append(_openai_chunk(request_id, model, created, {"role": "assistant", "content": text}, None))
            continue
        function_call = part.get("functionCall")
        if isinstance(function_call, dict) and function_call.get("name"):
            tool_call = {
                "index": tool_call_offset + tool_call_count,
                "id": function_call.get("id") or _next_tool_call_id(),
                "type": "function",
                "function": {
                    "name": function_call["name"],
                    "arguments": _function_args_to_str(function_call.get("args")),
                },
            }
            chunks.append(_openai_chunk(request_id, model, created, {"role": "assistant", "tool_calls": [tool_call]}, None))
            tool_call_count += 1

    if finish:
        terminal = _openai_chunk(
            request_id, model, created, {}, openai_finish_reason(finish, has_tool_calls=tool_call_offset + tool_call_count > 0)
        )
        usage = extract_usage(response)
        if not usage.is_empty:
            terminal["usage"] = _openai_usage(usage)
        chunks.append(terminal)
    return chunks


def openai_error_sse(message: str, *, code: int = 502, error_type: str = "upstream_error") -> bytes:
    return sse_data({"error": {"message": message or "upstream_error", "type": error_type, "code": code}})


# ==================== 上游 -> Gemini ====================


def _filter_gemini_parts(parts: List[Dict[str, Any]], include_thoughts: bool) -> List[Dict[str, Any]]:
    return [
        part
        for part in parts
        if not _is_signature_only(part) and (include_thoughts or not is_thought_part(part))
    ]


def _with_parts(response: Dict[str, Any], parts: List[Dict[str, Any]], finish: Optional[str]) -> Dict[str, Any]:
    out = {k: v for k, v in response.items() if k not in ("candidates", "usageMetadata")}
    candidate: Dict[str, Any] = {"content": {"role": "model", "parts": parts}, "index": 0}
    if finish:
        candidate["finishReason"] = finish
    out["candidates"] = [candidate]
    return out


def upstream_response_to_gemini(raw: Dict[str, Any], include_thoughts: bool) -> Dict[str, Any]:
    """上游非流式响应 -> Gemini generateContent 响应（去掉 response 包装）"""
    response = unwrap_upstream_response(raw) or {}
    parts, finish = first_candidate(response)
    out = _with_parts(response, _filter_gemini_parts(parts, include_thoughts), finish)
    if isinstance(response.get("usageMetadata"), dict):
        out["usageMetadata"] = response["usageMetadata"]
    return out


def upstream_event_to_gemini_chunks(
    event: Union[str, bytes, Dict[str, Any]],
    include_thoughts: bool,
) -> List[Dict[str, Any]]:
    response = parse_upstream_event(event)
    if response is None:
        return []
    parts, finish = first_candidate(response)
    parts = _filter_gemini_parts(parts, include_thoughts)

    chunks: List[Dict[str, Any]] = []
    if parts:
        chunks.append(_with_parts(response, parts, None))
    if finish:
        terminal = _with_parts(response, [], finish)
        if isinstance(response.get("usageMetadata"), dict):
            terminal["usageMetadata"] = response["usageMetadata"]
        chunks.append(terminal)
    return chunks


def gemini_error_sse(message: str, *, code: int = 502) -> bytes:
    return sse_data({"error": {"code": code, "message": message or "upstream_error"}})
