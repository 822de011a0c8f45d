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

"""Block readiness resolution.

Every inbound edge of a block is in one of three states:

- pending: its source has not finished, or sits in a loop that has not
  completed
- active: its source completed and the edge leaves the selected handle
- inactive: its source was skipped, or the edge leaves a branch handle
  that was not selected

A block is ready once no considered edge is pending and at least one is
active (or it has none). A block whose edges all resolved inactive is
skipped, and so is every block reachable only through it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .graph import Edge
from .states import BlockStatus, LoopState

if TYPE_CHECKING:
    from .context import ExecutionContext
    from .validator import ValidatedGraph


class EdgeState:
    """Edge state constants."""

    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


class Readiness:
    """Block readiness constants."""

    READY = "ready"
    WAITING = "waiting"
    SKIP = "skip"


class DependencyResolver:
    """Evaluates edge states and block readiness for one validated graph.

    The resolver is stateless; everything it reads comes from the
    ExecutionContext passed to each call.
    """

    def __init__(self, validated: ValidatedGraph) -> None:
        self.validated = validated
        self.graph = validated.graph

    def edge_state(self, edge: Edge, ctx: ExecutionContext) -> str:
        """Determine the state of one edge.

        Outputs of loop members become visible outside the loop only once
        the loop completes.

        Args:
            edge: The edge to inspect
            ctx: The run's execution context

        Returns:
            One of the EdgeState constants
        """
        source_loop = self.graph.loop_of(edge.source)
        if source_loop is not None and source_loop != self.graph.loop_of(edge.target):
            if ctx.loop_states[source_loop] != LoopState.COMPLETED:
                return EdgeState.PENDING

        status = ctx.block_status[edge.source]
        if status == BlockStatus.SKIPPED:
            return EdgeState.INACTIVE
        if status != BlockStatus.COMPLETED:
            return EdgeState.PENDING

        schema = self.validated.schema_of(edge.source)
        active = schema.active_handle(ctx.block_outputs.get(edge.source))
        if active is not None and edge.source_handle != active:
            return EdgeState.INACTIVE
        return EdgeState.ACTIVE

    def readiness(self, block_id: str, ctx: ExecutionContext) -> str:
        """Determine whether a pending block can run.

        Disabled blocks are always skipped. Back edges of a loop are not
        considered.

        Args:
            block_id: The block to inspect
            ctx: The run's execution context

        Returns:
            One of the Readiness constants
        """
        block = self.graph.blocks[block_id]
        if not block.enabled:
            return Readiness.SKIP

        edges = self.validated.considered_edges(block_id)
        if not edges:
            return Readiness.READY

        states = {self.edge_state(edge, ctx) for edge in edges}
        if EdgeState.PENDING in states:
            return Readiness.WAITING
        if EdgeState.ACTIVE in states:
            return Readiness.READY
        return Readiness.SKIP

    def ready_blocks(self, ctx: ExecutionContext) -> list[str]:
        """Pending blocks outside any loop that are ready, in execution order.

        Blocks found unreachable along the way are marked skipped.
        """
        ready: list[str] = []
        for block_id in self.validated.order:
            if self.graph.loop_of(block_id) is not None:
                continue
            if ctx.block_status[block_id] != BlockStatus.PENDING:
                continue
            readiness = self.readiness(block_id, ctx)
            if readiness == Readiness.SKIP:
                ctx.set_status(block_id, BlockStatus.SKIPPED)
            elif readiness == Readiness.READY:
                ready.append(block_id)
        return ready
