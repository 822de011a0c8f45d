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

"""Structural validation of workflow graphs.

Checks run in a fixed order and stop at the first violation:

1. Block types are registered; edges reference existing blocks and
   handles the block types expose.
2. Loop scopes reference existing blocks, no block is in two loops,
   ``maxIterations`` is positive and the exit condition parses.
3. The graph with every loop scope contracted to a single node is acyclic.
4. Enabled blocks carry their required configuration fields.

Validation is a pure function of the graph; nothing is invoked.
"""

import heapq
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .condition import parse_condition
from .errors import (
    CyclicGraphError,
    DanglingEdgeError,
    InvalidHandleError,
    InvalidLoopError,
    LoopMemberNotFoundError,
    LoopMembershipError,
    MissingFieldError,
)
from .graph import Edge, WorkflowGraph
from .loops import LoopPlan, plan_loop
from .schema import BlockTypeRegistry, BlockTypeSchema, FieldKind, is_blank
from .types import BlockId, LoopId

logger = logging.getLogger(__name__)

# Contracted graph node: (kind, id), kind being _LOOP_NODE or _BLOCK_NODE
_Node = tuple[str, str]
_LOOP_NODE = "loop"
_BLOCK_NODE = "block"


@dataclass(frozen=True)
class ValidatedGraph:
    """A graph that passed validation, with the derived execution plan.

    Attributes:
        graph: The validated graph
        schemas: Schema of every block, keyed by block id
        order: Topological order of all blocks; loop members appear
            together at their loop's position, in forward-edge order
        loop_plans: Iteration plan of each loop scope
        exit_conditions: Parsed exit condition AST of each loop, if any
    """

    graph: WorkflowGraph
    schemas: Mapping[BlockId, BlockTypeSchema]
    order: tuple[BlockId, ...]
    loop_plans: Mapping[LoopId, LoopPlan]
    exit_conditions: Mapping[LoopId, dict | None]

    def schema_of(self, block_id: str) -> BlockTypeSchema:
        return self.schemas[BlockId(block_id)]

    def is_back_edge(self, edge: Edge) -> bool:
        loop_id = self.graph.loop_of(edge.target)
        return loop_id is not None and edge.id in self.loop_plans[loop_id].back_edges

    def considered_edges(self, block_id: str) -> list[Edge]:
        """Inbound edges that gate a block's readiness.

        Back edges of a loop only close the iteration and never gate a
        member; everything else does.
        """
        return [edge for edge in self.graph.inbound_edges(block_id) if not self.is_back_edge(edge)]


class GraphValidator:
    """Validates workflow graphs against a block type registry.

    Example:
        validated = GraphValidator(BlockTypeRegistry.default()).validate(graph)
    """

    def __init__(self, registry: BlockTypeRegistry | None = None) -> None:
        self.registry = registry or BlockTypeRegistry.default()

    def validate(self, graph: WorkflowGraph) -> ValidatedGraph:
        """Validate a graph and derive its execution plan.

        Args:
            graph: The graph to validate

        Returns:
            ValidatedGraph for the graph

        Raises:
            ValidationError: The first structural violation found
        """
        schemas = self._check_types(graph)
        self._check_edges(graph, schemas)
        exit_conditions = self._check_loops(graph)
        loop_plans = {loop_id: plan_loop(graph, loop) for loop_id, loop in graph.loops.items()}
        order = self._contracted_order(graph, loop_plans)
        self._check_fields(graph, schemas)

        logger.debug(
            "Graph validated: blocks=%d edges=%d loops=%d",
            len(graph.blocks),
            len(graph.edges),
            len(graph.loops),
        )
        return ValidatedGraph(
            graph=graph,
            schemas=schemas,
            order=order,
            loop_plans=loop_plans,
            exit_conditions=exit_conditions,
        )

    # -- (a) block types, edges and handles --------------------------------

    def _check_types(self, graph: WorkflowGraph) -> dict[BlockId, BlockTypeSchema]:
        return {
            block_id: self.registry.require(block_id, block.type)
            for block_id, block in graph.blocks.items()
        }

    def _check_edges(self, graph: WorkflowGraph, schemas: Mapping[BlockId, BlockTypeSchema]) -> None:
        for edge in graph.edges:
            for block_id in (edge.source, edge.target):
                if block_id not in graph.blocks:
                    raise DanglingEdgeError(edge.id, block_id)

            outputs = schemas[edge.source].output_handles
            if edge.source_handle not in outputs:
                raise InvalidHandleError(
                    edge.id, edge.source, edge.source_handle, "output", list(outputs)
                )
            inputs = schemas[edge.target].input_handles
            if edge.target_handle not in inputs:
                raise InvalidHandleError(
                    edge.id, edge.target, edge.target_handle, "input", list(inputs)
                )

    # -- (b) loop scopes ---------------------------------------------------

    def _check_loops(self, graph: WorkflowGraph) -> dict[LoopId, dict | None]:
        owners: dict[BlockId, list[str]] = {}
        exit_conditions: dict[LoopId, dict | None] = {}

        for loop in graph.loops.values():
            if not loop.members:
                raise InvalidLoopError(loop.id, "loop has no member blocks")
            seen: set[BlockId] = set()
            for member in loop.members:
                if member not in graph.blocks:
                    raise LoopMemberNotFoundError(loop.id, member)
                if member in seen:
                    raise InvalidLoopError(loop.id, f"block {member} is listed twice")
                seen.add(member)
                owners.setdefault(member, []).append(loop.id)
            if loop.max_iterations < 1:
                raise InvalidLoopError(
                    loop.id, f"maxIterations must be at least 1, got {loop.max_iterations}"
                )
            exit_conditions[loop.id] = (
                parse_condition(loop.exit_condition) if loop.exit_condition else None
            )

        for block_id, loop_ids in owners.items():
            if len(loop_ids) > 1:
                raise LoopMembershipError(block_id, loop_ids)
        return exit_conditions

    # -- (c) acyclicity of the contracted graph ----------------------------

    def _contracted_order(
        self, graph: WorkflowGraph, loop_plans: Mapping[LoopId, LoopPlan]
    ) -> tuple[BlockId, ...]:
        """Topologically sort the graph with each loop contracted to one node.

        Ties are broken by document order so the result is deterministic.

        Raises:
            CyclicGraphError: If a cycle remains after contraction
        """
        position = {block_id: index for index, block_id in enumerate(graph.blocks)}

        def node_of(block_id: BlockId) -> _Node:
            loop_id = graph.loop_of(block_id)
            if loop_id is not None:
                return (_LOOP_NODE, loop_id)
            return (_BLOCK_NODE, block_id)

        nodes: dict[_Node, int] = {}
        for block_id in graph.blocks:
            nodes.setdefault(node_of(block_id), position[block_id])

        successors: dict[_Node, list[_Node]] = {node: [] for node in nodes}
        indegree: dict[_Node, int] = dict.fromkeys(nodes, 0)
        for edge in graph.edges:
            if graph.is_internal(edge):
                continue
            source, target = node_of(edge.source), node_of(edge.target)
            successors[source].append(target)
            indegree[target] += 1

        heap = [(nodes[node], node) for node, degree in indegree.items() if degree == 0]
        heapq.heapify(heap)
        ordered_nodes: list[_Node] = []
        while heap:
            _, node = heapq.heappop(heap)
            ordered_nodes.append(node)
            for successor in successors[node]:
                indegree[successor] -= 1
                if indegree[successor] == 0:
                    heapq.heappush(heap, (nodes[successor], successor))

        if len(ordered_nodes) < len(nodes):
            remaining = {node for node, degree in indegree.items() if degree > 0}
            cycle = _find_cycle(remaining, successors, nodes)
            raise CyclicGraphError([_describe_node(node) for node in cycle])

        order: list[BlockId] = []
        for kind, node_id in ordered_nodes:
            if kind == _LOOP_NODE:
                order.extend(loop_plans[LoopId(node_id)].order)
            else:
                order.append(BlockId(node_id))
        return tuple(order)

    # -- (d) required fields -----------------------------------------------

    def _check_fields(self, graph: WorkflowGraph, schemas: Mapping[BlockId, BlockTypeSchema]) -> None:
        for block_id, block in graph.blocks.items():
            if not block.enabled:
                continue
            schema = schemas[block_id]
            missing = schema.missing_fields(block.config)
            if missing:
                raise MissingFieldError(block_id, missing[0])
            for spec in schema.fields:
                value: Any = block.config.get(spec.name)
                if spec.kind == FieldKind.EXPRESSION and isinstance(value, str) and not is_blank(value):
                    parse_condition(value)


def _find_cycle(
    remaining: set[_Node], successors: Mapping[_Node, list[_Node]], nodes: Mapping[_Node, int]
) -> list[_Node]:
    """Extract one concrete cycle from nodes left over by the sort.

    Every leftover node has a leftover predecessor, so walking predecessor
    links backwards must revisit a node.
    """
    predecessor: dict[_Node, _Node] = {}
    for source in sorted(remaining, key=nodes.__getitem__):
        for target in successors[source]:
            if target in remaining:
                predecessor.setdefault(target, source)

    start = min(remaining, key=nodes.__getitem__)
    walk: list[_Node] = []
    seen: dict[_Node, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(walk)
        walk.append(node)
        node = predecessor[node]
    cycle = walk[seen[node]:]
    cycle.reverse()
    return cycle + [cycle[0]]


def _describe_node(node: _Node) -> str:
    kind, node_id = node
    if kind == _LOOP_NODE:
        return f"loop {node_id}"
    return node_id


def validate(graph: WorkflowGraph, registry: BlockTypeRegistry | None = None) -> ValidatedGraph:
    """Validate a graph with the given (or default) registry.

    Raises:
        ValidationError: The first structural violation found
    """
    return GraphValidator(registry).validate(graph)
