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

"""Block type schemas.

A schema tells the engine which configuration fields a block type
accepts, which of them are required, which handles it exposes and
whether its output selects an outgoing branch. Schemas say nothing about
what a block computes; that belongs to the capability it resolves to.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import UnknownBlockTypeError
from .types import DEFAULT_SOURCE_HANDLE, DEFAULT_TARGET_HANDLE

# Handle names of branching blocks
TRUE_HANDLE = "true"
FALSE_HANDLE = "false"


class FieldKind:
    """Field kind constants.

    - TEXT: plain value, ``<block.path>`` references interpolated
    - EXPRESSION: evaluated with the condition language before the call
    - SECRET: ``{{NAME}}`` references substituted from the run's secrets
    - JSON: structured value, strings parsed as JSON
    """

    TEXT = "text"
    EXPRESSION = "expression"
    SECRET = "secret"
    JSON = "json"


@dataclass(frozen=True)
class FieldCondition:
    """Makes a field apply only when another field holds one of some values."""

    field: str
    values: tuple[Any, ...]

    def holds(self, config: Mapping[str, Any]) -> bool:
        return config.get(self.field) in self.values


@dataclass(frozen=True)
class FieldSpec:
    """One configuration field of a block type."""

    name: str
    required: bool = False
    kind: str = FieldKind.TEXT
    default: Any = None
    condition: FieldCondition | None = None

    def applies_to(self, config: Mapping[str, Any]) -> bool:
        """Check whether the field is active for a block's configuration."""
        return self.condition is None or self.condition.holds(config)

    def is_required(self, config: Mapping[str, Any]) -> bool:
        return self.required and self.applies_to(config)


def when(field_name: str, *values: Any) -> FieldCondition:
    """Shorthand for a FieldCondition."""
    return FieldCondition(field_name, tuple(values))


def is_blank(value: Any) -> bool:
    """Check whether a config value counts as absent."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return not value
    return False


@dataclass(frozen=True)
class BlockTypeSchema:
    """Declared shape of a block type.

    Attributes:
        type: Block type name as it appears in workflow documents
        fields: Configuration fields
        input_handles: Handles an inbound edge may target
        output_handles: Handles an outbound edge may leave from
        branching: Output selects exactly one active output handle
        produces_response: Output is the run's designated result
    """

    type: str
    fields: tuple[FieldSpec, ...] = ()
    input_handles: tuple[str, ...] = (DEFAULT_TARGET_HANDLE,)
    output_handles: tuple[str, ...] = (DEFAULT_SOURCE_HANDLE,)
    branching: bool = False
    produces_response: bool = False

    def get_field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    def missing_fields(self, config: Mapping[str, Any]) -> list[str]:
        """Names of required fields absent from a configuration.

        A field with a default is never missing.
        """
        return [
            spec.name
            for spec in self.fields
            if spec.is_required(config) and spec.default is None and is_blank(config.get(spec.name))
        ]

    def apply_defaults(self, config: Mapping[str, Any]) -> dict[str, Any]:
        """Copy of config with defaults filled in for blank fields."""
        result = dict(config)
        for spec in self.fields:
            if spec.default is not None and is_blank(result.get(spec.name)):
                result[spec.name] = spec.default
        return result

    def active_handle(self, output: Any) -> str | None:
        """Select the active output handle from a branching block's output.

        Uses ``selectedHandle`` when the output names one, otherwise maps
        the truthiness of ``result`` to the true/false handles. Returns
        None for non-branching types, meaning every handle is active.
        """
        if not self.branching:
            return None
        if isinstance(output, Mapping):
            selected = output.get("selectedHandle")
            if selected is not None:
                return str(selected)
            result = output.get("result")
        else:
            result = output
        return TRUE_HANDLE if result else FALSE_HANDLE


class BlockTypeRegistry:
    """Registry of block type schemas.

    Example:
        registry = BlockTypeRegistry.default()
        registry.register(BlockTypeSchema("slack", fields=(FieldSpec("channel", True),)))
    """

    def __init__(self, schemas: Iterable[BlockTypeSchema] = ()) -> None:
        self._schemas: dict[str, BlockTypeSchema] = {}
        for schema in schemas:
            self.register(schema)

    def register(self, schema: BlockTypeSchema) -> None:
        """Register or replace a schema."""
        self._schemas[schema.type] = schema

    def get(self, block_type: str) -> BlockTypeSchema | None:
        return self._schemas.get(block_type)

    def require(self, block_id: str, block_type: str) -> BlockTypeSchema:
        """Get a schema or raise for the block that declared the type.

        Raises:
            UnknownBlockTypeError: If no schema is registered for the type
        """
        schema = self._schemas.get(block_type)
        if schema is None:
            raise UnknownBlockTypeError(block_id, block_type)
        return schema

    def __contains__(self, block_type: str) -> bool:
        return block_type in self._schemas

    def types(self) -> list[str]:
        return list(self._schemas)

    @classmethod
    def default(cls) -> "BlockTypeRegistry":
        """Registry holding the built-in block types."""
        return cls(BUILTIN_SCHEMAS)


_NOTION_PAGE_OPS = ("read_notion", "write_notion")
_NOTION_DATABASE_OPS = ("read_database", "write_database", "update_database")

BUILTIN_SCHEMAS: tuple[BlockTypeSchema, ...] = (
    BlockTypeSchema(
        type="starter",
        fields=(FieldSpec("input", kind=FieldKind.EXPRESSION, default="input"),),
        input_handles=(),
    ),
    BlockTypeSchema(
        type="agent",
        fields=(
            FieldSpec("model"),
            FieldSpec("systemPrompt"),
            FieldSpec("context"),
            FieldSpec("temperature"),
            FieldSpec("apiKey", kind=FieldKind.SECRET),
        ),
    ),
    BlockTypeSchema(
        type="api",
        fields=(
            FieldSpec("url", required=True),
            FieldSpec("method", default="GET"),
            FieldSpec("headers", kind=FieldKind.JSON),
            FieldSpec("params", kind=FieldKind.JSON),
            FieldSpec("body", kind=FieldKind.JSON),
        ),
    ),
    BlockTypeSchema(
        type="function",
        fields=(FieldSpec("code", required=True),),
    ),
    BlockTypeSchema(
        type="condition",
        fields=(FieldSpec("condition", required=True, kind=FieldKind.EXPRESSION),),
        output_handles=(TRUE_HANDLE, FALSE_HANDLE),
        branching=True,
    ),
    BlockTypeSchema(
        type="response",
        fields=(
            FieldSpec("data"),
            FieldSpec("status", default=200),
        ),
        output_handles=(),
        produces_response=True,
    ),
    BlockTypeSchema(
        type="notion",
        fields=(
            FieldSpec("operation", required=True),
            FieldSpec(
                "pageId",
                required=True,
                condition=when("operation", *_NOTION_PAGE_OPS, "update_database"),
            ),
            FieldSpec("databaseId", required=True, condition=when("operation", *_NOTION_DATABASE_OPS)),
            FieldSpec("content", required=True, condition=when("operation", "write_notion")),
            FieldSpec(
                "properties",
                required=True,
                kind=FieldKind.JSON,
                condition=when("operation", "write_database", "update_database"),
            ),
            FieldSpec("filter", kind=FieldKind.JSON, condition=when("operation", "read_database")),
            FieldSpec("sorts", kind=FieldKind.JSON, condition=when("operation", "read_database")),
            FieldSpec("pageSize", condition=when("operation", "read_database")),
            FieldSpec("apiKey", required=True, kind=FieldKind.SECRET),
        ),
    ),
)
