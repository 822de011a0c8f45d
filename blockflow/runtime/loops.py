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

"""Bounded iteration over loop scopes.

A loop scope is planned once at validation time: its internal edges are
split into forward edges, which order members within one pass, and back
edges, which close the cycle and are ignored by the resolver. At run time
the LoopController drives each scope through Idle -> Running -> Completed.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .dependency import DependencyResolver, EdgeState, Readiness
from .errors import EvaluationError, LoopConditionError, ReferenceResolutionError
from .expression import ExpressionEvaluator
from .graph import Edge, LoopScope, WorkflowGraph
from .states import BlockStatus, LoopState
from .types import BlockId, EdgeId, LoopId

if TYPE_CHECKING:
    from .context import ExecutionContext
    from .validator import ValidatedGraph

logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass(frozen=True)
class LoopPlan:
    """Static iteration plan of one loop scope.

    Attributes:
        loop_id: The loop scope
        order: Members sorted along forward edges, ties in declaration order
        forward_edges: Internal edges that order members within a pass
        back_edges: Internal edges that close a cycle
        entry_edges: Edges from outside the loop into a member
    """

    loop_id: LoopId
    order: tuple[BlockId, ...]
    forward_edges: frozenset[EdgeId]
    back_edges: frozenset[EdgeId]
    entry_edges: tuple[Edge, ...]


def plan_loop(graph: WorkflowGraph, loop: LoopScope) -> LoopPlan:
    """Split a loop's internal edges into forward and back edges.

    Runs a depth-first search over the members, starting from members
    entered from outside the loop and then the rest, both in declaration
    order. An edge into a member still on the search stack is a back edge.

    Args:
        graph: The graph owning the loop
        loop: The loop scope to plan

    Returns:
        LoopPlan for the scope
    """
    members = set(loop.members)
    internal = [e for e in graph.edges if e.source in members and e.target in members]
    entry_edges = tuple(e for e in graph.edges if e.target in members and e.source not in members)

    entered = {edge.target for edge in entry_edges}
    roots = [m for m in loop.members if m in entered] + [m for m in loop.members if m not in entered]

    outgoing: dict[BlockId, list[Edge]] = {m: [] for m in loop.members}
    for edge in internal:
        outgoing[edge.source].append(edge)

    color = dict.fromkeys(loop.members, _WHITE)
    back: set[EdgeId] = set()
    for root in roots:
        if color[root] != _WHITE:
            continue
        color[root] = _GRAY
        stack = [(root, iter(outgoing[root]))]
        while stack:
            node, edges = stack[-1]
            edge = next(edges, None)
            if edge is None:
                color[node] = _BLACK
                stack.pop()
            elif color[edge.target] == _GRAY:
                back.add(edge.id)
            elif color[edge.target] == _WHITE:
                color[edge.target] = _GRAY
                stack.append((edge.target, iter(outgoing[edge.target])))

    forward = [e for e in internal if e.id not in back]
    return LoopPlan(
        loop_id=loop.id,
        order=_forward_order(loop.members, forward),
        forward_edges=frozenset(e.id for e in forward),
        back_edges=frozenset(back),
        entry_edges=entry_edges,
    )


def _forward_order(members: tuple[BlockId, ...], forward: list[Edge]) -> tuple[BlockId, ...]:
    position = {member: index for index, member in enumerate(members)}
    indegree = dict.fromkeys(members, 0)
    for edge in forward:
        indegree[edge.target] += 1
    heap = [(position[m], m) for m in members if indegree[m] == 0]
    heapq.heapify(heap)
    order: list[BlockId] = []
    while heap:
        _, member = heapq.heappop(heap)
        order.append(member)
        for edge in forward:
            if edge.source == member:
                indegree[edge.target] -= 1
                if indegree[edge.target] == 0:
                    heapq.heappush(heap, (position[edge.target], edge.target))
    return tuple(order)


class LoopController:
    """Drives loop scopes through their iterations.

    The controller keeps no state of its own; loop states, iteration
    counts and member statuses all live on the ExecutionContext.
    """

    def __init__(
        self,
        validated: ValidatedGraph,
        resolver: DependencyResolver,
        evaluator: ExpressionEvaluator | None = None,
    ) -> None:
        self.validated = validated
        self.resolver = resolver
        self.evaluator = evaluator or ExpressionEvaluator()

    def advance(self, loop_id: LoopId, ctx: ExecutionContext) -> list[BlockId]:
        """Move a loop forward as far as current outputs allow.

        Starts or prunes an idle loop, skips members that cannot run this
        pass, and closes the iteration once every member is resolved.

        Args:
            loop_id: The loop scope to advance
            ctx: The run's execution context

        Returns:
            Pending members ready to be invoked for the current iteration

        Raises:
            LoopConditionError: If the exit condition fails to evaluate
        """
        plan = self.validated.loop_plans[loop_id]
        state = ctx.loop_states[loop_id]
        if state == LoopState.COMPLETED:
            return []

        if state == LoopState.IDLE:
            entry = [self.resolver.edge_state(edge, ctx) for edge in plan.entry_edges]
            if EdgeState.PENDING in entry:
                return []
            if entry and EdgeState.ACTIVE not in entry:
                self._prune(loop_id, ctx)
                return []
            self._start(loop_id, ctx)

        ready: list[BlockId] = []
        for member in plan.order:
            if ctx.block_status[member] != BlockStatus.PENDING:
                continue
            readiness = self.resolver.readiness(member, ctx)
            if readiness == Readiness.SKIP:
                ctx.set_status(member, BlockStatus.SKIPPED)
            elif readiness == Readiness.READY:
                ready.append(member)

        if all(BlockStatus.is_resolved(ctx.block_status[m]) for m in plan.order):
            self._finish_iteration(loop_id, ctx)
            return []
        return ready

    def _start(self, loop_id: LoopId, ctx: ExecutionContext) -> None:
        ctx.set_loop_state(loop_id, LoopState.RUNNING)
        ctx.iteration_counts[loop_id] = 1
        logger.info(
            "Loop started: loop_id=%s max_iterations=%d",
            loop_id,
            self.validated.graph.loops[loop_id].max_iterations,
        )

    def _prune(self, loop_id: LoopId, ctx: ExecutionContext) -> None:
        ctx.set_loop_state(loop_id, LoopState.COMPLETED)
        for member in self.validated.loop_plans[loop_id].order:
            if ctx.block_status[member] == BlockStatus.PENDING:
                ctx.set_status(member, BlockStatus.SKIPPED)
        logger.info("Loop pruned: loop_id=%s", loop_id)

    def _finish_iteration(self, loop_id: LoopId, ctx: ExecutionContext) -> None:
        iteration = ctx.iteration_counts[loop_id]
        max_iterations = self.validated.graph.loops[loop_id].max_iterations

        exit_now = False
        condition = self.validated.exit_conditions.get(loop_id)
        if condition is not None:
            try:
                exit_now = self.evaluator.evaluate_condition(condition, ctx.scope(loop_id))
            except (EvaluationError, ReferenceResolutionError) as e:
                raise LoopConditionError(loop_id, e) from e

        logger.debug(
            "Loop iteration finished: loop_id=%s iteration=%d exit=%s",
            loop_id,
            iteration,
            exit_now,
        )

        if exit_now or iteration >= max_iterations:
            ctx.set_loop_state(loop_id, LoopState.COMPLETED)
            logger.info(
                "Loop completed: loop_id=%s iterations=%d reason=%s",
                loop_id,
                iteration,
                "condition" if exit_now else "max_iterations",
            )
            return

        ctx.iteration_counts[loop_id] = iteration + 1
        for member in self.validated.loop_plans[loop_id].order:
            ctx.set_status(member, BlockStatus.PENDING)
        ctx.set_loop_state(loop_id, LoopState.RUNNING)
