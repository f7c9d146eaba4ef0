"""Tests for ChatML prompt building and tool-call parsing."""

from scmd_local.interfaces.backend.messages import (
    CompletionRequest,
    ToolDefinition,
    ToolParameter,
    ToolRequest,
)
from scmd_local.nlp.llm.prompt_format import build_prompt, build_tool_prompt, parse_tool_calls


def test_prompt_without_system():
    assert build_prompt(CompletionRequest(prompt="hi")) == (
        "<|im_start|>user\nhi<|im_end|>\n<|im_start|>assistant\n"
    )


def test_prompt_with_system():
    out = build_prompt(CompletionRequest(prompt="hi", system_prompt="be brief"))
    assert out.startswith("<|im_start|>system\nbe brief<|im_end|>\n<|im_start|>user\nhi")
    assert out.endswith("<|im_start|>assistant\n")


def test_tool_prompt_lists_tools_and_parameters():
    req = ToolRequest(
        prompt="what's in /tmp?",
        system_prompt="You are helpful.",
        tools=[
            ToolDefinition(
                name="list_dir",
                description="List a directory",
                parameters={"path": ToolParameter(type="string", description="Directory", required=True)},
            )
        ],
    )
    out = build_tool_prompt(req)

    assert out.startswith("<|im_start|>system\nYou are helpful.\n\nYou have access to the following tools:")
    assert "### list_dir\nList a directory\n" in out
    assert "- path (string) (required): Directory\n" in out
    assert "<tool_call>" in out
    assert out.endswith("<|im_start|>user\nwhat's in /tmp?<|im_end|>\n<|im_start|>assistant\n")


def test_parse_tool_calls():
    text = (
        'Sure.\n<tool_call>{"name": "list_dir", "parameters": {"path": "/tmp"}}</tool_call>\n'
        "<tool_call>not json</tool_call>\n"
        '<tool_call>\n{"name": "pwd"}\n</tool_call>'
    )
    calls = parse_tool_calls(text)

    assert [c.name for c in calls] == ["list_dir", "pwd"]
    assert calls[0].parameters == {"path": "/tmp"}
    assert calls[1].parameters == {}


def test_unterminated_tool_call_is_ignored():
    assert parse_tool_calls('<tool_call>{"name": "x"}') == []
