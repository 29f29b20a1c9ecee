"""
Tool-call extraction from free-form model output.

Models that do not speak a native tool-calling API are prompted to emit
```json fenced blocks holding {"tool": ..., "arguments": {...}} objects.
This module turns such text back into structured records and formats tool
definitions for the prompt.
"""

import json
import re
from typing import Any, Dict, Iterable, List


# ```json ... ``` with the fence tag matched exactly (not ```jsonc, ```json5)
TOOL_CALL_REGEX = re.compile(r"```json(?![\w-])[^\S\r\n]*(.*?)```", re.DOTALL)


def _as_tool_call(item: Any) -> Dict[str, Any]:
    """Normalize a parsed object into {tool, arguments}, or {} if unqualified."""
    if not isinstance(item, dict):
        return {}

    tool = item.get("tool")
    if not isinstance(tool, str) or not tool:
        return {}

    arguments = item.get("arguments")
    if not isinstance(arguments, dict):
        arguments = {k: v for k, v in item.items() if k not in ("tool", "arguments")}

    return {"tool": tool, "arguments": arguments}


def extract_tool_calls(text: str) -> List[Dict[str, Any]]:
    """
    Extract tool calls from ```json fenced blocks in text.

    A block may hold one object with a "tool" key or an array of them.
    Blocks that fail to parse and objects without "tool" are skipped, so
    this never raises on malformed model output.

    Returns:
        [{"tool": str, "arguments": dict}, ...] in source order
    """
    if not text:
        return []

    tool_calls: List[Dict[str, Any]] = []

    for match in TOOL_CALL_REGEX.finditer(text):
        try:
            parsed = json.loads(match.group(1))
        except ValueError:
            continue

        items = parsed if isinstance(parsed, list) else [parsed]
        for item in items:
            call = _as_tool_call(item)
            if call:
                tool_calls.append(call)

    return tool_calls


def strip_tool_blocks(text: str) -> str:
    """Text with every ```json block removed, for human-readable analysis."""
    if not text:
        return ""
    return TOOL_CALL_REGEX.sub("", text).strip()


def format_tool_definitions(tools: Iterable[Dict[str, Any]]) -> str:
    """Render tool definitions as markdown for a system prompt."""
    sections = []
    for tool in tools:
        sections.append(
            f"### {tool['name']}\n"
            f"{tool.get('description', '')}\n"
            f"Schema: {json.dumps(tool.get('input_schema', {}))}\n"
        )
    return "\n".join(sections)
