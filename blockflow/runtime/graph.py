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

"""Workflow graph model.

Parses the serialized workflow document produced by the editor into an
immutable graph of blocks, edges and loop scopes. Structural checks beyond
what is needed to build the model live in :mod:`.validator`.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

from .errors import GraphFormatError
from .types import (
    DEFAULT_SOURCE_HANDLE,
    DEFAULT_TARGET_HANDLE,
    BlockId,
    EdgeId,
    LoopId,
    normalize_name,
)

# Iteration bound applied when a serialized loop omits maxIterations
DEFAULT_MAX_ITERATIONS = 5


@dataclass(frozen=True)
class BlockInstance:
    """A typed unit of work placed on the canvas."""

    id: BlockId
    type: str
    name: str = ""
    position: Any = None
    enabled: bool = True
    config: Mapping[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        """Name used in logs and messages."""
        return self.name or self.id

    @property
    def operation(self) -> str | None:
        """The operation selected in the block's configuration, if any."""
        value = self.config.get("operation")
        return str(value) if value not in (None, "") else None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "position": self.position,
            "enabled": self.enabled,
            "config": dict(self.config),
        }


@dataclass(frozen=True)
class Edge:
    """A directed link between an output handle and an input handle."""

    id: EdgeId
    source: BlockId
    target: BlockId
    source_handle: str = DEFAULT_SOURCE_HANDLE
    target_handle: str = DEFAULT_TARGET_HANDLE

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
        }


@dataclass(frozen=True)
class LoopScope:
    """A bounded-iteration region of the graph that may contain cycles."""

    id: LoopId
    members: tuple[BlockId, ...]
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    exit_condition: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "id": self.id,
            "nodes": list(self.members),
            "maxIterations": self.max_iterations,
        }
        if self.exit_condition:
            result["condition"] = self.exit_condition
        return result


@dataclass(frozen=True)
class WorkflowGraph:
    """Parsed, immutable workflow definition for one execution run.

    ``blocks`` keeps document order; that order is used to break ties
    wherever the engine needs a deterministic sequence.
    """

    blocks: Mapping[BlockId, BlockInstance] = field(default_factory=dict)
    edges: tuple[Edge, ...] = ()
    loops: Mapping[LoopId, LoopScope] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, document: Mapping[str, Any]) -> "WorkflowGraph":
        """Build a graph from a serialized workflow document.

        Accepts both the editor state shape (``source``/``target`` edges,
        ``subBlocks`` config, loops with ``nodes``) and the engine shape
        (``sourceBlockId``/``targetBlockId``, ``config``, ``memberBlockIds``).

        Args:
            document: Dict with ``blocks``, ``edges`` and optional ``loops``

        Returns:
            WorkflowGraph for the document

        Raises:
            GraphFormatError: If the document is malformed
        """
        if not isinstance(document, Mapping):
            raise GraphFormatError("workflow document must be an object")

        # Editor payloads sometimes wrap the graph in a "state" object
        if "blocks" not in document and isinstance(document.get("state"), Mapping):
            document = document["state"]

        blocks = _parse_blocks(document.get("blocks", {}))
        edges = tuple(
            _parse_edge(raw, index) for index, raw in enumerate(document.get("edges") or [])
        )
        loops = _parse_loops(document.get("loops") or {})
        return cls(blocks=blocks, edges=edges, loops=loops)

    def to_dict(self) -> dict:
        """Convert back to the serialized document shape."""
        return {
            "blocks": {block_id: block.to_dict() for block_id, block in self.blocks.items()},
            "edges": [edge.to_dict() for edge in self.edges],
            "loops": {loop_id: loop.to_dict() for loop_id, loop in self.loops.items()},
        }

    # -- Derived indexes ---------------------------------------------------

    @cached_property
    def _inbound(self) -> dict[BlockId, list[Edge]]:
        index: dict[BlockId, list[Edge]] = {block_id: [] for block_id in self.blocks}
        for edge in self.edges:
            index.setdefault(edge.target, []).append(edge)
        return index

    @cached_property
    def _outbound(self) -> dict[BlockId, list[Edge]]:
        index: dict[BlockId, list[Edge]] = {block_id: [] for block_id in self.blocks}
        for edge in self.edges:
            index.setdefault(edge.source, []).append(edge)
        return index

    @cached_property
    def _loop_of(self) -> dict[BlockId, LoopId]:
        # First declaration wins; double membership is reported by the validator
        owners: dict[BlockId, LoopId] = {}
        for loop in self.loops.values():
            for member in loop.members:
                owners.setdefault(member, loop.id)
        return owners

    @cached_property
    def _by_name(self) -> dict[str, BlockId]:
        names: dict[str, BlockId] = {}
        for block in self.blocks.values():
            if block.name:
                names.setdefault(normalize_name(block.name), block.id)
        return names

    def get_block(self, block_id: str) -> BlockInstance | None:
        """Get a block by ID."""
        return self.blocks.get(BlockId(block_id))

    def inbound_edges(self, block_id: str) -> Sequence[Edge]:
        """Edges that end at the block."""
        return self._inbound.get(BlockId(block_id), [])

    def outbound_edges(self, block_id: str) -> Sequence[Edge]:
        """Edges that start at the block."""
        return self._outbound.get(BlockId(block_id), [])

    def predecessors(self, block_id: str) -> list[BlockId]:
        """Distinct source blocks of the block's inbound edges, in edge order."""
        seen: dict[BlockId, None] = {}
        for edge in self.inbound_edges(block_id):
            seen.setdefault(edge.source, None)
        return list(seen)

    def loop_of(self, block_id: str) -> LoopId | None:
        """The loop scope that owns the block, if any."""
        return self._loop_of.get(BlockId(block_id))

    def is_internal(self, edge: Edge) -> bool:
        """Check if both ends of an edge sit inside the same loop scope."""
        loop_id = self.loop_of(edge.source)
        return loop_id is not None and loop_id == self.loop_of(edge.target)

    def find_block(self, reference: str) -> BlockInstance | None:
        """Find a block by ID or by normalized name."""
        block = self.blocks.get(BlockId(reference))
        if block is not None:
            return block
        block_id = self._by_name.get(normalize_name(reference))
        return self.blocks.get(block_id) if block_id else None

    def terminal_blocks(self) -> list[BlockInstance]:
        """Blocks with no outgoing edges, in document order."""
        return [block for block in self.blocks.values() if not self.outbound_edges(block.id)]


# =========================================================================
# Document parsing helpers
# =========================================================================


def _parse_blocks(raw_blocks: Any) -> dict[BlockId, BlockInstance]:
    """Parse the ``blocks`` section (mapping keyed by id, or a list)."""
    if isinstance(raw_blocks, Mapping):
        items = list(raw_blocks.items())
    elif isinstance(raw_blocks, list):
        items = [(None, raw) for raw in raw_blocks]
    else:
        raise GraphFormatError("'blocks' must be an object or a list")

    blocks: dict[BlockId, BlockInstance] = {}
    for key, raw in items:
        if not isinstance(raw, Mapping):
            raise GraphFormatError(f"block {key!r} must be an object")
        block_id = raw.get("id", key)
        if not block_id:
            raise GraphFormatError("block without an id")
        if key is not None and str(block_id) != str(key):
            raise GraphFormatError(f"block key '{key}' does not match its id '{block_id}'")
        block_id = BlockId(str(block_id))
        if block_id in blocks:
            raise GraphFormatError(f"duplicate block id '{block_id}'")
        block_type = raw.get("type")
        if not block_type:
            raise GraphFormatError(f"block '{block_id}' has no type")

        blocks[block_id] = BlockInstance(
            id=block_id,
            type=str(block_type),
            name=str(raw.get("name") or ""),
            position=raw.get("position"),
            enabled=bool(raw.get("enabled", True)),
            config=_parse_config(raw),
        )
    return blocks


def _parse_config(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten a block's configuration.

    Editor documents store field values as ``subBlocks: {id: {value}}``;
    explicit ``config`` entries take precedence over sub-block values.
    """
    config: dict[str, Any] = {}
    sub_blocks = raw.get("subBlocks") or {}
    if isinstance(sub_blocks, Mapping):
        for field_id, sub_block in sub_blocks.items():
            if isinstance(sub_block, Mapping):
                config[str(sub_block.get("id", field_id))] = sub_block.get("value")
            else:
                config[str(field_id)] = sub_block
    explicit = raw.get("config") or {}
    if not isinstance(explicit, Mapping):
        raise GraphFormatError(f"config of block '{raw.get('id')}' must be an object")
    config.update(explicit)
    return config


def _parse_edge(raw: Any, index: int) -> Edge:
    """Parse one edge entry."""
    if not isinstance(raw, Mapping):
        raise GraphFormatError(f"edge #{index} must be an object")
    source = raw.get("sourceBlockId", raw.get("source"))
    target = raw.get("targetBlockId", raw.get("target"))
    if not source or not target:
        raise GraphFormatError(f"edge #{index} needs a source and a target")
    return Edge(
        id=EdgeId(str(raw.get("id") or f"edge-{index}")),
        source=BlockId(str(source)),
        target=BlockId(str(target)),
        source_handle=str(raw.get("sourceHandle") or DEFAULT_SOURCE_HANDLE),
        target_handle=str(raw.get("targetHandle") or DEFAULT_TARGET_HANDLE),
    )


def _parse_loops(raw_loops: Any) -> dict[LoopId, LoopScope]:
    """Parse the ``loops`` section."""
    if not isinstance(raw_loops, Mapping):
        raise GraphFormatError("'loops' must be an object")

    loops: dict[LoopId, LoopScope] = {}
    for key, raw in raw_loops.items():
        if not isinstance(raw, Mapping):
            raise GraphFormatError(f"loop '{key}' must be an object")
        loop_id = LoopId(str(raw.get("id") or key))
        members = raw.get("memberBlockIds", raw.get("nodes")) or []
        if not isinstance(members, (list, tuple, set, frozenset)):
            raise GraphFormatError(f"members of loop '{loop_id}' must be a list")

        max_iterations = raw.get("maxIterations", DEFAULT_MAX_ITERATIONS)
        if isinstance(max_iterations, bool) or not isinstance(max_iterations, int):
            try:
                max_iterations = int(str(max_iterations))
            except ValueError as e:
                raise GraphFormatError(
                    f"maxIterations of loop '{loop_id}' must be an integer"
                ) from e

        condition = raw.get("exitCondition", raw.get("condition"))
        loops[loop_id] = LoopScope(
            id=loop_id,
            members=tuple(BlockId(str(m)) for m in members),
            max_iterations=max_iterations,
            exit_condition=str(condition) if condition not in (None, "") else None,
        )
    return loops
