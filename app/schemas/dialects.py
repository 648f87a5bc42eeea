"""
入站请求的方言标记

HTTP 边界把已校验的请求体包成 ExternalRequest，之后的转换逻辑只看 dialect 标记，
不再去探测字段。
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Dialect(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"


@dataclass(frozen=True)
class ExternalRequest:
    dialect: Dialect
    model: str
    payload: Dict[str, Any]
    stream: bool = False
    # 请求了思考输出时为预算 token 数；None 表示不需要思考内容
    thinking_budget: Optional[int] = None

    @property
    def include_reasoning(self) -> bool:
        return self.thinking_budget is not None
