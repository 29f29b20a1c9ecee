"""
Tests for tool-call extraction from model output.
"""
import pytest

from tool_calls import (
    extract_tool_calls,
    format_tool_definitions,
    strip_tool_blocks
)


class TestExtractToolCalls:
    """Test extraction of ```json tool call blocks."""

    def test_single_block(self):
        """One fenced object yields one call."""
        text = 'Let me check.\n```json\n{"tool": "kubectl_query", "arguments": {"type": "get"}}\n```'

        calls = extract_tool_calls(text)

        assert calls == [{"tool": "kubectl_query", "arguments": {"type": "get"}}]

    def test_multiple_blocks_in_order(self):
        """Calls come back in source order."""
        text = (
            '```json\n{"tool": "a", "arguments": {}}\n```\n'
            'middle prose\n'
            '```json\n{"tool": "b", "arguments": {"x": 1}}\n```'
        )

        calls = extract_tool_calls(text)

        assert [c["tool"] for c in calls] == ["a", "b"]
        assert calls[1]["arguments"] == {"x": 1}

    def test_array_block(self):
        """A block holding an array yields each qualifying element."""
        text = '```json\n[{"tool": "a"}, {"not_a_tool": true}, {"tool": "b"}]\n```'

        calls = extract_tool_calls(text)

        assert [c["tool"] for c in calls] == ["a", "b"]

    def test_inline_arguments(self):
        """Without an arguments object the remaining keys become arguments."""
        text = '```json\n{"tool": "kubectl_query", "type": "logs", "resource": "pod/api"}\n```'

        calls = extract_tool_calls(text)

        assert calls[0]["arguments"] == {"type": "logs", "resource": "pod/api"}

    def test_malformed_json_skipped(self):
        """Unparseable blocks are skipped, not raised."""
        text = (
            '```json\n{"tool": "broken", \n```\n'
            '```json\n{"tool": "ok", "arguments": {}}\n```'
        )

        calls = extract_tool_calls(text)

        assert [c["tool"] for c in calls] == ["ok"]

    def test_objects_without_tool_skipped(self):
        """Objects missing a string tool name are not calls."""
        text = '```json\n{"arguments": {}}\n```\n```json\n{"tool": 5}\n```'
        assert extract_tool_calls(text) == []

    def test_other_fence_languages_ignored(self):
        """Only ```json fences count."""
        text = (
            '```python\n{"tool": "py"}\n```\n'
            '```jsonc\n{"tool": "jsonc"}\n```\n'
            '```\n{"tool": "plain"}\n```'
        )
        assert extract_tool_calls(text) == []

    @pytest.mark.parametrize("text", ["", None, "no blocks at all"])
    def test_empty_input(self, text):
        """No text, no calls."""
        assert extract_tool_calls(text) == []

    def test_same_line_content(self):
        """JSON may start on the fence line."""
        text = '```json {"tool": "a", "arguments": {}}```'
        assert extract_tool_calls(text) == [{"tool": "a", "arguments": {}}]


class TestStripToolBlocks:
    """Test removal of tool blocks from prose."""

    def test_strips_blocks(self):
        """Only prose remains."""
        text = 'The pod is crashing.\n```json\n{"tool": "a"}\n```\n'
        assert strip_tool_blocks(text) == "The pod is crashing."

    def test_leaves_other_fences(self):
        """Non-json code fences are kept."""
        text = "Run this:\n```bash\nkubectl get pods\n```"
        assert "kubectl get pods" in strip_tool_blocks(text)

    def test_empty(self):
        assert strip_tool_blocks("") == ""


class TestFormatting:
    """Test tool definition and output rendering."""

    def test_format_tool_definitions(self):
        """Each tool gets a heading, description and schema."""
        rendered = format_tool_definitions([
            {
                "name": "kubectl_query",
                "description": "Run a query",
                "input_schema": {"type": "object"}
            }
        ])

        assert "### kubectl_query" in rendered
        assert "Run a query" in rendered
        assert '{"type": "object"}' in rendered
