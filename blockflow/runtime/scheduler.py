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

"""Blockflow execution scheduler.

The ExecutionScheduler orchestrates one run:
- Validates the graph and resolves every block's capability up front
- Computes the ready set to a fixed point (resolver plus loop controller)
- Invokes ready blocks concurrently as asyncio tasks
- Records outputs, logs and spans as invocations finish

Only the scheduler task writes to the ExecutionContext. A block failure
stops new invocations while in-flight ones drain; cancellation and the
run timeout behave the same way but end the run as Cancelled.
"""

import asyncio
import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..config import EngineConfig
from .capabilities import CapabilityRegistry, CapabilityResolver, sync_executor
from .context import ExecutionContext
from .dependency import DependencyResolver
from .errors import (
    BlockExecutionError,
    CapabilityNotFoundError,
    EngineError,
    ExecutionCancelled,
    LoopConditionError,
    StalledExecutionError,
    ValidationError,
)
from .expression import ExpressionEvaluator
from .graph import BlockInstance, WorkflowGraph
from .invoker import BlockInvoker
from .loops import LoopController
from .schema import BlockTypeRegistry
from .secrets import redact
from .states import BlockStatus, RunState
from .trace import LogEntry, TraceRecorder, TraceSummary
from .types import BlockId, CapabilityId, LoopId, RunId, iso_timestamp, utc_now
from .types import run_id as new_run_id
from .validator import GraphValidator, ValidatedGraph

logger = logging.getLogger(__name__)


@dataclass
class ExecutionMetadata:
    """Wall-clock bounds of a run."""

    start_time: datetime
    end_time: datetime
    duration_ms: float

    def to_dict(self) -> dict:
        return {
            "duration": self.duration_ms,
            "startTime": iso_timestamp(self.start_time),
            "endTime": iso_timestamp(self.end_time),
        }


@dataclass
class ExecutionResult:
    """Terminal artifact of one run."""

    success: bool
    status: str
    run_id: RunId
    metadata: ExecutionMetadata
    output: Any = None
    error: str | None = None
    logs: list[LogEntry] = field(default_factory=list)
    trace: TraceSummary = field(default_factory=TraceSummary)

    def to_dict(self) -> dict:
        """Convert to the wire shape."""
        result: dict[str, Any] = {
            "success": self.success,
            "status": self.status,
            "runId": self.run_id,
            "output": self.output,
            "logs": [entry.to_dict() for entry in self.logs],
            "metadata": self.metadata.to_dict(),
            "trace": self.trace.to_dict(),
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class _InFlight:
    block: BlockInstance
    started_at: datetime
    loop_id: LoopId | None
    iteration: int | None


class ExecutionScheduler:
    """Drives workflow graphs to completion.

    Example:
        capabilities = CapabilityRegistry.with_builtins()
        capabilities.register("echo", lambda config, secrets, inputs: inputs)
        capabilities.bind("agent", "echo")
        result = ExecutionScheduler(capabilities).execute(graph, {"q": "hi"})
    """

    def __init__(
        self,
        capabilities: CapabilityResolver,
        registry: BlockTypeRegistry | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self.capabilities = capabilities
        self.registry = registry or BlockTypeRegistry.default()
        self.config = config or EngineConfig()
        self.validator = GraphValidator(self.registry)
        self.evaluator = ExpressionEvaluator()

    def execute(
        self,
        graph: WorkflowGraph | Mapping[str, Any],
        runtime_inputs: Mapping[str, Any] | None = None,
        secrets: Mapping[str, str] | None = None,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """Run a graph to completion on a fresh event loop.

        Must not be called from a running event loop; use
        :meth:`execute_async` there.
        """
        return asyncio.run(self.execute_async(graph, runtime_inputs, secrets, run_id=run_id))

    async def execute_async(
        self,
        graph: WorkflowGraph | Mapping[str, Any],
        runtime_inputs: Mapping[str, Any] | None = None,
        secrets: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """Run a graph to completion.

        Args:
            graph: The workflow graph, or a serialized workflow document
            runtime_inputs: Caller-supplied trigger payload
            secrets: Resolved secret values, by name
            cancel_event: Set by the caller to cancel the run cooperatively
            run_id: Optional explicit run ID

        Returns:
            ExecutionResult; engine failures are reported in it, never raised
        """
        rid = RunId(run_id) if run_id else new_run_id()
        secrets = dict(secrets or {})
        recorder = TraceRecorder(secrets, self.config.output_preview_chars)
        started_at = utc_now()

        logger.info("Run started: run_id=%s inputs=%s", rid, list((runtime_inputs or {}).keys()))

        try:
            if not isinstance(graph, WorkflowGraph):
                graph = WorkflowGraph.from_dict(graph)
            validated = self.validator.validate(graph)
            capability_ids = self._resolve_capabilities(validated)
        except ValidationError as e:
            logger.warning("Run rejected: run_id=%s error=%s", rid, e)
            return self._result(rid, RunState.FAILED, None, str(e), recorder, started_at)

        ctx = ExecutionContext.create(graph, runtime_inputs, secrets, rid)
        ctx.capability_ids = capability_ids
        ctx.set_state(RunState.RUNNING)

        # Pool for sync handlers; not joined when the run ends
        executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_blocks or None,
            thread_name_prefix=f"blockflow-{rid}",
        )
        token = sync_executor.set(executor)
        try:
            await self._drive(validated, ctx, recorder, cancel_event)
        except EngineError as e:
            # Stalled resolver or broken state machine invariant
            logger.critical("Run aborted on internal error: run_id=%s error=%s", rid, e)
            ctx.error = e
            if ctx.state == RunState.RUNNING:
                ctx.set_state(RunState.FAILED)
        finally:
            sync_executor.reset(token)
            executor.shutdown(wait=False, cancel_futures=True)

        output = None
        if ctx.state == RunState.RUNNING:
            ctx.set_state(RunState.SUCCEEDED)
            output = self._select_output(validated, ctx)

        error = redact(str(ctx.error), secrets) if ctx.error is not None else None
        result = self._result(rid, ctx.state, output, error, recorder, started_at)
        logger.info(
            "Run finished: run_id=%s status=%s duration_ms=%.1f",
            rid,
            result.status,
            result.metadata.duration_ms,
        )
        return result

    def _resolve_capabilities(self, validated: ValidatedGraph) -> dict[BlockId, CapabilityId]:
        """Resolve each enabled block to a capability id, once per run.

        Raises:
            CapabilityNotFoundError: For the first block nothing handles
        """
        resolved: dict[BlockId, CapabilityId] = {}
        for block_id, block in validated.graph.blocks.items():
            if not block.enabled:
                continue
            capability_id = self.capabilities.resolve(block.type, block.operation)
            if capability_id is None:
                raise CapabilityNotFoundError(block_id, block.type, block.operation)
            resolved[block_id] = capability_id
        return resolved

    async def _drive(
        self,
        validated: ValidatedGraph,
        ctx: ExecutionContext,
        recorder: TraceRecorder,
        cancel_event: asyncio.Event | None,
    ) -> None:
        resolver = DependencyResolver(validated)
        loops = LoopController(validated, resolver, self.evaluator)
        invoker = BlockInvoker(
            validated, self.capabilities, self.evaluator, self.config.block_timeout_s
        )
        position = {block_id: index for index, block_id in enumerate(validated.order)}
        limit = self.config.max_concurrent_blocks
        run_timeout = self.config.run_timeout_s
        deadline = time.monotonic() + run_timeout if run_timeout else None

        in_flight: dict[asyncio.Task, _InFlight] = {}
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
        stopping = False

        try:
            while True:
                if not stopping and cancel_event is not None and cancel_event.is_set():
                    self._stop(ctx, ExecutionCancelled("cancelled by caller"), RunState.CANCELLED)
                    stopping = True

                if not stopping:
                    try:
                        ready = self._collect_ready(validated, ctx, resolver, loops)
                    except LoopConditionError as e:
                        self._stop(ctx, e, RunState.FAILED)
                        stopping = True
                        ready = []
                    ready.sort(key=position.__getitem__)

                    for block_id in ready:
                        if limit and len(in_flight) >= limit:
                            break
                        if not self._start(block_id, ctx, invoker, recorder, in_flight):
                            stopping = True
                            break

                if not in_flight:
                    if stopping:
                        return
                    unresolved = ctx.unresolved()
                    if not unresolved:
                        return
                    raise StalledExecutionError(unresolved)

                waiting: set[asyncio.Future] = set(in_flight)
                if cancel_waiter is not None and not stopping:
                    waiting.add(cancel_waiter)
                timeout = None
                if deadline is not None and not stopping:
                    timeout = max(deadline - time.monotonic(), 0.0)

                done, _ = await asyncio.wait(
                    waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )

                if not done and not stopping:
                    reason = f"run timed out after {run_timeout:g}s"
                    self._stop(ctx, ExecutionCancelled(reason), RunState.CANCELLED)
                    stopping = True
                    continue

                for task in done:
                    if task is cancel_waiter:
                        continue
                    if not self._finish(task, in_flight.pop(task), ctx, recorder):
                        stopping = True
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()
            for task in in_flight:
                task.cancel()

    def _collect_ready(
        self,
        validated: ValidatedGraph,
        ctx: ExecutionContext,
        resolver: DependencyResolver,
        loops: LoopController,
    ) -> list[BlockId]:
        """Compute the ready set, repeating until no status changes.

        Skipping a block or completing a loop can unblock others, so a
        single pass is not enough.
        """
        while True:
            revision = ctx.revision
            ready = [BlockId(b) for b in resolver.ready_blocks(ctx)]
            for loop_id in validated.graph.loops:
                ready.extend(loops.advance(loop_id, ctx))
            if ctx.revision == revision:
                return ready

    def _start(
        self,
        block_id: BlockId,
        ctx: ExecutionContext,
        invoker: BlockInvoker,
        recorder: TraceRecorder,
        in_flight: dict[asyncio.Task, _InFlight],
    ) -> bool:
        """Start one invocation. Returns False if the block failed to start."""
        block = ctx.graph.blocks[block_id]
        loop_id, iteration = ctx.iteration_of(block_id)
        started_at = utc_now()
        ctx.set_status(block_id, BlockStatus.RUNNING)
        logger.debug(
            "Block started: run_id=%s block_id=%s type=%s iteration=%s",
            ctx.run_id,
            block_id,
            block.type,
            iteration,
        )

        try:
            prepared = invoker.prepare(block, ctx)
        except BlockExecutionError as e:
            self._fail_block(e, block, started_at, loop_id, iteration, ctx, recorder)
            return False

        task = asyncio.create_task(invoker.call(prepared), name=f"block:{block_id}")
        in_flight[task] = _InFlight(block, started_at, loop_id, iteration)
        return True

    def _finish(
        self,
        task: asyncio.Task,
        flight: _InFlight,
        ctx: ExecutionContext,
        recorder: TraceRecorder,
    ) -> bool:
        """Record a finished invocation. Returns False if it failed."""
        block = flight.block
        try:
            output = task.result()
        except BlockExecutionError as e:
            self._fail_block(
                e, block, flight.started_at, flight.loop_id, flight.iteration, ctx, recorder
            )
            return False

        ended_at = utc_now()
        ctx.record_output(block.id, output)
        entry = recorder.record(
            block,
            flight.started_at,
            ended_at,
            output=output,
            loop_id=flight.loop_id,
            iteration=flight.iteration,
        )
        logger.info(
            "Block completed: run_id=%s block_id=%s duration_ms=%.1f",
            ctx.run_id,
            block.id,
            entry.duration_ms,
        )
        return True

    def _fail_block(
        self,
        error: BlockExecutionError,
        block: BlockInstance,
        started_at: datetime,
        loop_id: LoopId | None,
        iteration: int | None,
        ctx: ExecutionContext,
        recorder: TraceRecorder,
    ) -> None:
        ctx.set_status(block.id, BlockStatus.FAILED)
        entry = recorder.record(
            block,
            started_at,
            utc_now(),
            error=str(error),
            loop_id=loop_id,
            iteration=iteration,
        )
        logger.error(
            "Block failed: run_id=%s block_id=%s error=%s", ctx.run_id, block.id, entry.error
        )
        self._stop(ctx, error, RunState.FAILED)

    def _stop(self, ctx: ExecutionContext, error: Exception, state: str) -> None:
        """End the run with a terminal error; the first one wins."""
        if ctx.state != RunState.RUNNING:
            return
        ctx.error = error
        ctx.set_state(state)
        if state == RunState.CANCELLED:
            logger.warning("Run cancelled: run_id=%s reason=%s", ctx.run_id, error)

    def _select_output(self, validated: ValidatedGraph, ctx: ExecutionContext) -> Any:
        """Output of the designated terminal blocks.

        Response-producing blocks win when any completed; otherwise the
        completed blocks with no outgoing edges. One block yields its
        output directly, several yield a mapping keyed by block id.
        """
        graph = validated.graph
        completed = [b for b in graph.blocks if ctx.block_status[b] == BlockStatus.COMPLETED]
        chosen = [b for b in completed if validated.schema_of(b).produces_response]
        if not chosen:
            chosen = [b for b in completed if not graph.outbound_edges(b)]
        if not chosen:
            return None
        if len(chosen) == 1:
            return ctx.block_outputs.get(chosen[0])
        return {block_id: ctx.block_outputs.get(block_id) for block_id in chosen}

    def _result(
        self,
        rid: RunId,
        state: str,
        output: Any,
        error: str | None,
        recorder: TraceRecorder,
        started_at: datetime,
    ) -> ExecutionResult:
        ended_at = utc_now()
        return ExecutionResult(
            success=state == RunState.SUCCEEDED,
            status=state,
            run_id=rid,
            output=output,
            error=error,
            logs=recorder.logs,
            metadata=ExecutionMetadata(
                start_time=started_at,
                end_time=ended_at,
                duration_ms=round((ended_at - started_at).total_seconds() * 1000.0, 3),
            ),
            trace=recorder.summary(),
        )


def execute(
    graph: WorkflowGraph | Mapping[str, Any],
    runtime_inputs: Mapping[str, Any] | None = None,
    secrets: Mapping[str, str] | None = None,
    capability_resolver: CapabilityResolver | None = None,
    registry: BlockTypeRegistry | None = None,
    config: EngineConfig | None = None,
) -> ExecutionResult:
    """Execute a workflow graph synchronously.

    Args:
        graph: The workflow graph, or a serialized workflow document
        runtime_inputs: Caller-supplied trigger payload
        secrets: Resolved secret values, by name
        capability_resolver: Resolver for block capabilities; defaults to
            a registry holding only the control block capabilities
        registry: Block type schemas; defaults to the built-in types
        config: Engine settings

    Returns:
        ExecutionResult of the run
    """
    capabilities = capability_resolver or CapabilityRegistry.with_builtins()
    scheduler = ExecutionScheduler(capabilities, registry, config)
    return scheduler.execute(graph, runtime_inputs, secrets)
