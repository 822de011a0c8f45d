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

"""Block invocation.

Invoking a block happens in two steps. :meth:`BlockInvoker.prepare` runs
on the scheduler task and snapshots everything the call needs from the
ExecutionContext: resolved config and upstream outputs. :meth:`BlockInvoker.call`
then performs the capability call under the block's timeout without
touching the context again.
"""

import asyncio
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .capabilities import CapabilityResolver
from .context import ExecutionContext
from .errors import BlockExecutionError, BlockTimeoutError, CapabilityError, EvaluationError
from .expression import ExpressionEvaluator, interpolate
from .graph import BlockInstance
from .schema import FieldKind, is_blank
from .secrets import redact, substitute_secrets
from .types import BlockId, CapabilityId
from .validator import ValidatedGraph

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_TIMEOUT = 30.0

# Config key a block may set to override the engine's per-block timeout
TIMEOUT_FIELD = "timeout"


@dataclass(frozen=True)
class PreparedInvocation:
    """Everything needed to call a block's capability."""

    block: BlockInstance
    capability_id: CapabilityId
    config: Mapping[str, Any]
    inputs: Mapping[BlockId, Any]
    secrets: Mapping[str, str]
    timeout: float


class BlockInvoker:
    """Resolves block configuration and calls capabilities.

    No retries are performed; retry policy belongs to the capability.
    """

    def __init__(
        self,
        validated: ValidatedGraph,
        capabilities: CapabilityResolver,
        evaluator: ExpressionEvaluator | None = None,
        default_timeout: float = DEFAULT_BLOCK_TIMEOUT,
    ) -> None:
        self.validated = validated
        self.capabilities = capabilities
        self.evaluator = evaluator or ExpressionEvaluator()
        self.default_timeout = default_timeout

    async def invoke(self, block: BlockInstance, ctx: ExecutionContext) -> Any:
        """Prepare and call a block in one step.

        Args:
            block: The block to invoke
            ctx: The run's execution context

        Returns:
            The block's output

        Raises:
            BlockExecutionError: If resolution or the call fails
        """
        return await self.call(self.prepare(block, ctx))

    def prepare(self, block: BlockInstance, ctx: ExecutionContext) -> PreparedInvocation:
        """Snapshot a block's resolved config and upstream outputs.

        Raises:
            BlockExecutionError: If config resolution fails
        """
        try:
            return PreparedInvocation(
                block=block,
                capability_id=ctx.capability_ids[block.id],
                config=self.resolve_config(block, ctx),
                inputs=self.gather_inputs(block, ctx),
                secrets=ctx.secrets,
                timeout=self.timeout_for(block),
            )
        except Exception as e:
            raise BlockExecutionError(block.id, e, block.name) from e

    async def call(self, prepared: PreparedInvocation) -> Any:
        """Call the capability under the block's timeout.

        Raises:
            BlockExecutionError: Wrapping BlockTimeoutError, CapabilityError
                or any unexpected resolver exception
        """
        block = prepared.block
        try:
            try:
                result = await asyncio.wait_for(
                    self.capabilities.call(
                        prepared.capability_id,
                        prepared.config,
                        prepared.secrets,
                        prepared.inputs,
                    ),
                    timeout=prepared.timeout,
                )
            except TimeoutError as e:
                raise BlockTimeoutError(prepared.timeout) from e
            if not result.success:
                message = redact(result.error or "capability reported failure", prepared.secrets)
                raise CapabilityError(prepared.capability_id, message)
            return result.output
        except Exception as e:
            raise BlockExecutionError(block.id, e, block.name) from e

    def resolve_config(self, block: BlockInstance, ctx: ExecutionContext) -> dict[str, Any]:
        """Resolve a block's configuration for invocation.

        Defaults are applied first. Expression fields are evaluated;
        every other field gets ``{{SECRET}}`` substitution followed by
        ``<block.path>`` interpolation, and JSON fields given as text are
        parsed.

        Raises:
            EvaluationError: If an expression or JSON field is invalid
            ReferenceResolutionError: If an expression names an unknown block
            MissingSecretError: If a referenced secret was not supplied
        """
        schema = self.validated.schema_of(block.id)
        scope = ctx.scope(self.validated.graph.loop_of(block.id))

        resolved: dict[str, Any] = {}
        for key, value in schema.apply_defaults(block.config).items():
            spec = schema.get_field(key)
            kind = spec.kind if spec else FieldKind.TEXT
            if kind == FieldKind.EXPRESSION:
                if isinstance(value, str) and not is_blank(value):
                    value = self.evaluator.evaluate(value, scope)
            else:
                value = interpolate(substitute_secrets(value, ctx.secrets), scope)
                if kind == FieldKind.JSON and isinstance(value, str):
                    value = _parse_json(key, value)
            resolved[key] = value
        return resolved

    def gather_inputs(self, block: BlockInstance, ctx: ExecutionContext) -> dict[BlockId, Any]:
        """Outputs of the block's direct predecessors, keyed by block id."""
        return {
            source: ctx.block_outputs[source]
            for source in self.validated.graph.predecessors(block.id)
            if source in ctx.block_outputs
        }

    def timeout_for(self, block: BlockInstance) -> float:
        """The block's timeout: its ``timeout`` config if positive, else the default."""
        override = block.config.get(TIMEOUT_FIELD)
        if isinstance(override, (int, float)) and not isinstance(override, bool) and override > 0:
            return float(override)
        return self.default_timeout


def _parse_json(field_name: str, text: str) -> Any:
    if is_blank(text):
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise EvaluationError(text, f"Field '{field_name}' is not valid JSON: {e.msg}") from e
