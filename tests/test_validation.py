"""Argument validation of built-in tool calls, before anything executes."""

import pytest

from echochat.llm.types import ToolCall
from echochat.tools.base import normalize_schema
from echochat.tools.builtin import register_builtin_tools
from echochat.tools.registry import ToolRegistry
from echochat.tools.validation import ToolValidator
from tests.mock_tools import ExtraKeysTool


@pytest.fixture
def registry() -> ToolRegistry:
    return register_builtin_tools(ToolRegistry())


class TestNormalizeSchema:
    def test_fills_object_defaults(self):
        assert normalize_schema({}) == {
            "type": "object",
            "properties": {},
            "additionalProperties": False,
        }

    def test_keeps_explicit_values(self):
        schema = {"properties": {"a": {"type": "integer"}}, "additionalProperties": True}
        out = normalize_schema(schema)
        assert out["additionalProperties"] is True
        assert out["properties"] == {"a": {"type": "integer"}}
        assert "type" not in schema

    def test_builtin_definitions_are_closed(self, registry):
        for defn in registry.definitions():
            assert defn.parameters["additionalProperties"] is False, defn.name


class TestBuiltinCallValidation:
    @pytest.mark.parametrize(
        "tool, args, missing",
        [
            ("file_read", {}, "path"),
            ("file_write", {"content": "x"}, "path"),
            ("file_write", {"path": "/tmp/x"}, "content"),
            ("shell_execute", {}, "command"),
            ("web_fetch", {}, "url"),
        ],
    )
    async def test_missing_required(self, registry, tool, args, missing):
        result = await registry.execute(ToolCall("c1", tool, args))
        assert result.is_error
        assert result.content == f"Missing required parameter: {missing}"
        assert result.call_id == "c1"

    async def test_extra_key_rejected(self, registry, tmp_path):
        result = await registry.execute(
            ToolCall("c2", "file_read", {"path": str(tmp_path), "encoding": "latin-1"})
        )
        assert result.is_error
        assert "'encoding' was unexpected" in result.content

    async def test_extra_key_on_parameterless_tool(self, registry):
        result = await registry.execute(ToolCall("c3", "system_info", {"verbose": True}))
        assert result.is_error
        assert "verbose" in result.content

    async def test_wrong_type_never_executes(self, registry):
        result = await registry.execute(ToolCall("c4", "shell_execute", {"command": ["rm", "-rf"]}))
        assert result.is_error
        assert "is not of type 'string'" in result.content

    async def test_valid_call_runs(self, registry, tmp_path):
        f = tmp_path / "a.txt"
        f.write_text("contents")
        result = await registry.execute(ToolCall("c5", "file_read", {"path": str(f)}))
        assert result.is_error is False
        assert result.content == "contents"


class TestToolValidator:
    def test_open_schema_accepts_extra_keys(self):
        ok, err = ToolValidator.validate(ExtraKeysTool(), {"base_param": "x", "more": 1})
        assert (ok, err) == (True, None)

    def test_open_schema_still_requires_fields(self):
        ok, err = ToolValidator.validate(ExtraKeysTool(), {"more": 1})
        assert ok is False
        assert err == "Missing required parameter: base_param"
