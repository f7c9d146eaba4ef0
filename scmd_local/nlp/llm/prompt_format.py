from __future__ import annotations

from typing import List
import json
import logging
import re

from scmd_local.interfaces.backend.messages import CompletionRequest, ToolCall, ToolRequest

logger = logging.getLogger(__name__)

IM_START = "<|im_start|>"
IM_END = "<|im_end|>"
STOP_SEQUENCES = [IM_END, "<|endoftext|>"]

_TOOL_CALL_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)


def _turn(role: str, content: str) -> str:
    return f"{IM_START}{role}\n{content}{IM_END}\n"


def build_prompt(req: CompletionRequest) -> str:
    """ChatML prompt: optional system turn, the user turn, then an open assistant turn."""
    parts = []
    if req.system_prompt:
        parts.append(_turn("system", req.system_prompt))
    parts.append(_turn("user", req.prompt))
    parts.append(f"{IM_START}assistant\n")
    return "".join(parts)


def build_tool_prompt(req: ToolRequest) -> str:
    system = ""
    if req.system_prompt:
        system += req.system_prompt + "\n\n"

    if req.tools:
        system += "You have access to the following tools:\n\n"
        for tool in req.tools:
            system += f"### {tool.name}\n{tool.description}\n"
            if tool.parameters:
                system += "Parameters:\n"
                for pname, param in tool.parameters.items():
                    flag = " (required)" if param.required else ""
                    system += f"- {pname} ({param.type}){flag}: {param.description}\n"
            system += "\n"
        system += "To use a tool, respond with:\n"
        system += '<tool_call>{"name": "tool_name", "parameters": {...}}</tool_call>\n'

    return _turn("system", system) + _turn("user", req.prompt) + f"{IM_START}assistant\n"


def parse_tool_calls(text: str) -> List[ToolCall]:
    """
    Extract every ``<tool_call>{json}</tool_call>`` block from model output.

    Blocks that are not a JSON object with a string ``name`` are skipped.
    An unterminated block ends the scan.
    """
    calls: List[ToolCall] = []
    for m in _TOOL_CALL_RE.finditer(text):
        raw = m.group(1).strip()
        try:
            obj = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed tool call: %s", raw[:200])
            continue
        if not isinstance(obj, dict) or not isinstance(obj.get("name"), str):
            continue
        params = obj.get("parameters")
        calls.append(ToolCall(name=obj["name"], parameters=params if isinstance(params, dict) else {}))
    return calls
