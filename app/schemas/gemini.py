"""
Gemini generateContent 请求格式（v1beta）
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GenerateContentRequest(BaseModel):
    contents: List[Dict[str, Any]] = Field(..., min_length=1, description="对话内容")
    systemInstruction: Optional[Dict[str, Any]] = None
    generationConfig: Optional[Dict[str, Any]] = None
    safetySettings: Optional[List[Dict[str, Any]]] = None
    tools: Optional[List[Dict[str, Any]]] = None
    toolConfig: Optional[Dict[str, Any]] = None

    model_config = {"extra": "allow"}
