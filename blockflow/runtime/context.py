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

"""Per-run execution state.

One ExecutionContext exists per run. Only the scheduler task writes to
it; block invocations read from it between suspension points.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .expression import EvaluationScope
from .graph import WorkflowGraph
from .states import (
    BLOCK_TRANSITIONS,
    LOOP_TRANSITIONS,
    RUN_TRANSITIONS,
    BlockStatus,
    LoopState,
    RunState,
    check_transition,
)
from .types import BlockId, CapabilityId, LoopId, RunId, run_id as new_run_id


@dataclass
class ExecutionContext:
    """Mutable state of one execution run.

    Attributes:
        run_id: Identifier of the run
        graph: The graph being executed
        runtime_inputs: Caller-supplied trigger payload (read-only)
        secrets: Resolved credential values (read-only, never logged)
        block_outputs: Latest output of each block, overwritten per iteration
        block_status: BlockStatus of each block for its current pass
        iteration_counts: Current iteration of each started loop
        loop_states: LoopState of each loop scope
        capability_ids: Capability each enabled block resolved to at run start
        state: RunState of the run
        error: Terminal error of a failed or cancelled run
    """

    run_id: RunId
    graph: WorkflowGraph
    runtime_inputs: Mapping[str, Any]
    secrets: Mapping[str, str]
    block_outputs: dict[BlockId, Any] = field(default_factory=dict)
    block_status: dict[BlockId, str] = field(default_factory=dict)
    iteration_counts: dict[LoopId, int] = field(default_factory=dict)
    loop_states: dict[LoopId, str] = field(default_factory=dict)
    capability_ids: dict[BlockId, CapabilityId] = field(default_factory=dict)
    state: str = RunState.INITIALIZING
    error: Exception | None = None

    # Bumped on every status change; the scheduler uses it to detect a fixpoint
    revision: int = 0

    @classmethod
    def create(
        cls,
        graph: WorkflowGraph,
        runtime_inputs: Mapping[str, Any] | None = None,
        secrets: Mapping[str, str] | None = None,
        run_id: RunId | None = None,
    ) -> "ExecutionContext":
        """Create a fresh context with every block pending and every loop idle."""
        return cls(
            run_id=run_id or new_run_id(),
            graph=graph,
            runtime_inputs=MappingProxyType(dict(runtime_inputs or {})),
            secrets=MappingProxyType(dict(secrets or {})),
            block_status=dict.fromkeys(graph.blocks, BlockStatus.PENDING),
            loop_states=dict.fromkeys(graph.loops, LoopState.IDLE),
        )

    def set_status(self, block_id: BlockId, status: str) -> None:
        """Transition a block's status.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        current = self.block_status[block_id]
        self.block_status[block_id] = check_transition(block_id, current, status, BLOCK_TRANSITIONS)
        self.revision += 1

    def set_loop_state(self, loop_id: LoopId, state: str) -> None:
        """Transition a loop's state.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        current = self.loop_states[loop_id]
        self.loop_states[loop_id] = check_transition(loop_id, current, state, LOOP_TRANSITIONS)
        self.revision += 1

    def set_state(self, state: str) -> None:
        """Transition the run's state.

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        self.state = check_transition(self.run_id, self.state, state, RUN_TRANSITIONS)

    def record_output(self, block_id: BlockId, output: Any) -> None:
        """Store a block's output and mark it completed."""
        self.block_outputs[block_id] = output
        self.set_status(block_id, BlockStatus.COMPLETED)

    def iteration_of(self, block_id: BlockId) -> tuple[LoopId | None, int | None]:
        """The owning loop of a block and that loop's current iteration."""
        loop_id = self.graph.loop_of(block_id)
        if loop_id is None:
            return None, None
        return loop_id, self.iteration_counts.get(loop_id)

    def unresolved(self) -> list[BlockId]:
        """Blocks not yet completed or skipped, in document order."""
        return [
            block_id
            for block_id, status in self.block_status.items()
            if not BlockStatus.is_resolved(status)
        ]

    def running(self) -> list[BlockId]:
        return [
            block_id
            for block_id, status in self.block_status.items()
            if status == BlockStatus.RUNNING
        ]

    def scope(self, loop_id: LoopId | None = None) -> EvaluationScope:
        """Build an expression scope over the current outputs.

        Args:
            loop_id: Loop whose iteration is exposed as ``loop.iteration``
        """
        return EvaluationScope(
            inputs=self.runtime_inputs,
            outputs=self.block_outputs,
            find_block=self._find_block_id,
            loop_iteration=self.iteration_counts.get(loop_id) if loop_id else None,
        )

    def _find_block_id(self, reference: str) -> str | None:
        block = self.graph.find_block(reference)
        return block.id if block is not None else None
