from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CompletionRequest:
    prompt: str
    system_prompt: str = ""
    max_tokens: int = 0        # 0 = server default
    temperature: float = 0.0   # 0 = server default


@dataclass(frozen=True)
class CompletionResponse:
    content: str
    tokens_used: int = 0
    finish_reason: str = "complete"


@dataclass(frozen=True)
class StreamChunk:
    content: str = ""
    done: bool = False


@dataclass(frozen=True)
class ModelInfo:
    name: str
    size: str = ""
    quantization: str = ""
    context_length: int = 0
    capabilities: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ToolParameter:
    type: str
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    parameters: Dict[str, ToolParameter] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolRequest(CompletionRequest):
    tools: List[ToolDefinition] = field(default_factory=list)


@dataclass(frozen=True)
class ToolCall:
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResponse:
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    error: Optional[str] = None
