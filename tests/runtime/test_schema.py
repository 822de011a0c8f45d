# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for block type schemas."""

import pytest

from blockflow.runtime import BlockTypeRegistry, BlockTypeSchema, FieldSpec, UnknownBlockTypeError
from blockflow.runtime.schema import FALSE_HANDLE, TRUE_HANDLE, FieldKind, is_blank, when


@pytest.fixture
def registry():
    return BlockTypeRegistry.default()


class TestRegistry:
    def test_builtin_types(self, registry):
        for block_type in ("starter", "agent", "api", "function", "condition", "response", "notion"):
            assert block_type in registry

    def test_require_unknown_type(self, registry):
        with pytest.raises(UnknownBlockTypeError) as exc:
            registry.require("b1", "teleport")
        assert "b1" in str(exc.value)
        assert "teleport" in str(exc.value)

    def test_register_custom_schema(self, registry):
        registry.register(BlockTypeSchema("slack", fields=(FieldSpec("channel", required=True),)))
        assert registry.get("slack").missing_fields({}) == ["channel"]


class TestFields:
    """Tests for required fields, defaults and conditional fields."""

    def test_blank_values(self):
        assert is_blank(None)
        assert is_blank("  ")
        assert is_blank([])
        assert is_blank({})
        assert not is_blank(0)
        assert not is_blank(False)
        assert not is_blank("x")

    def test_api_requires_url(self, registry):
        schema = registry.get("api")
        assert schema.missing_fields({"method": "POST"}) == ["url"]
        assert schema.missing_fields({"url": "https://example.com"}) == []

    def test_defaults_fill_blank_fields(self, registry):
        schema = registry.get("api")
        resolved = schema.apply_defaults({"url": "u", "method": ""})
        assert resolved["method"] == "GET"

    def test_field_with_default_is_never_missing(self, registry):
        assert registry.get("starter").missing_fields({}) == []

    def test_notion_fields_depend_on_operation(self, registry):
        schema = registry.get("notion")
        assert schema.missing_fields({}) == ["operation", "apiKey"]
        assert schema.missing_fields({"operation": "read_notion", "apiKey": "k"}) == ["pageId"]
        assert schema.missing_fields({"operation": "write_notion", "apiKey": "k"}) == [
            "pageId",
            "content",
        ]
        assert schema.missing_fields({"operation": "write_database", "apiKey": "k"}) == [
            "databaseId",
            "properties",
        ]
        assert schema.missing_fields(
            {"operation": "read_database", "databaseId": "d", "apiKey": "k"}
        ) == []

    def test_field_condition(self):
        spec = FieldSpec("pageId", required=True, condition=when("operation", "read"))
        assert spec.is_required({"operation": "read"})
        assert not spec.is_required({"operation": "write"})

    def test_field_kinds(self, registry):
        assert registry.get("condition").get_field("condition").kind == FieldKind.EXPRESSION
        assert registry.get("notion").get_field("apiKey").kind == FieldKind.SECRET
        assert registry.get("api").get_field("body").kind == FieldKind.JSON


class TestHandles:
    """Tests for branch handle selection."""

    def test_condition_handles(self, registry):
        schema = registry.get("condition")
        assert schema.output_handles == (TRUE_HANDLE, FALSE_HANDLE)
        assert schema.branching

    def test_selected_handle_wins(self, registry):
        schema = registry.get("condition")
        assert schema.active_handle({"result": True, "selectedHandle": "false"}) == "false"

    def test_result_truthiness(self, registry):
        schema = registry.get("condition")
        assert schema.active_handle({"result": 1}) == TRUE_HANDLE
        assert schema.active_handle({"result": None}) == FALSE_HANDLE
        assert schema.active_handle(False) == FALSE_HANDLE

    def test_non_branching_has_no_active_handle(self, registry):
        assert registry.get("agent").active_handle({"result": False}) is None

    def test_starter_and_response_handles(self, registry):
        assert registry.get("starter").input_handles == ()
        assert registry.get("response").output_handles == ()
        assert registry.get("response").produces_response
