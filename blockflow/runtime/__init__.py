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

"""Blockflow runtime package.

Validates workflow graphs and executes them block by block, with
loop scopes, branch pruning and per-run traces.
"""

from .capabilities import (
    CONDITION_CAPABILITY,
    RESPONSE_CAPABILITY,
    STARTER_CAPABILITY,
    CapabilityRegistry,
    CapabilityResolver,
    CapabilityResult,
    CompositeCapabilityResolver,
    HttpCapability,
    ModuleCapabilityLoader,
    register_builtins,
)
from .condition import ConditionParser, parse_condition
from .context import ExecutionContext
from .dependency import DependencyResolver, EdgeState, Readiness

# Errors
from .errors import (
    BlockExecutionError,
    BlockTimeoutError,
    CapabilityError,
    CapabilityNotFoundError,
    ConditionSyntaxError,
    CyclicGraphError,
    DanglingEdgeError,
    EngineError,
    EvaluationError,
    ExecutionCancelled,
    GraphFormatError,
    InvalidHandleError,
    InvalidLoopError,
    InvalidTransitionError,
    LoopConditionError,
    LoopMemberNotFoundError,
    LoopMembershipError,
    MissingFieldError,
    MissingSecretError,
    ReferenceResolutionError,
    StalledExecutionError,
    UnknownBlockTypeError,
    ValidationError,
)
from .expression import EvaluationScope, ExpressionEvaluator, interpolate
from .graph import BlockInstance, Edge, LoopScope, WorkflowGraph
from .invoker import BlockInvoker, PreparedInvocation
from .log_store import ExecutionLogRecord, ExecutionLogStore, MemoryLogStore, MongoLogStore
from .loops import LoopController, LoopPlan, plan_loop
from .scheduler import ExecutionMetadata, ExecutionResult, ExecutionScheduler, execute
from .schema import BlockTypeRegistry, BlockTypeSchema, FieldKind, FieldSpec
from .secrets import (
    EnvSecretStore,
    MemorySecretStore,
    SecretStore,
    redact,
    resolve_secrets,
    substitute_secrets,
)
from .states import BlockStatus, LoopState, RunState
from .trace import LogEntry, TraceRecorder, TraceSpan, TraceSummary, build_trace_spans
from .types import BlockId, CapabilityId, EdgeId, LoopId, RunId
from .validator import GraphValidator, ValidatedGraph, validate

__all__ = [
    # Graph model
    "BlockInstance",
    "Edge",
    "LoopScope",
    "WorkflowGraph",
    "BlockId",
    "EdgeId",
    "LoopId",
    "RunId",
    "CapabilityId",
    # Schemas and validation
    "BlockTypeRegistry",
    "BlockTypeSchema",
    "FieldKind",
    "FieldSpec",
    "GraphValidator",
    "ValidatedGraph",
    "validate",
    # Expressions
    "ConditionParser",
    "parse_condition",
    "EvaluationScope",
    "ExpressionEvaluator",
    "interpolate",
    # Execution
    "ExecutionContext",
    "DependencyResolver",
    "EdgeState",
    "Readiness",
    "LoopController",
    "LoopPlan",
    "plan_loop",
    "BlockInvoker",
    "PreparedInvocation",
    "ExecutionScheduler",
    "ExecutionResult",
    "ExecutionMetadata",
    "execute",
    # States
    "BlockStatus",
    "LoopState",
    "RunState",
    # Capabilities
    "CapabilityRegistry",
    "CapabilityResolver",
    "CapabilityResult",
    "CompositeCapabilityResolver",
    "HttpCapability",
    "ModuleCapabilityLoader",
    "register_builtins",
    "STARTER_CAPABILITY",
    "CONDITION_CAPABILITY",
    "RESPONSE_CAPABILITY",
    # Secrets
    "SecretStore",
    "MemorySecretStore",
    "EnvSecretStore",
    "resolve_secrets",
    "substitute_secrets",
    "redact",
    # Tracing and persistence
    "LogEntry",
    "TraceRecorder",
    "TraceSpan",
    "TraceSummary",
    "build_trace_spans",
    "ExecutionLogRecord",
    "ExecutionLogStore",
    "MemoryLogStore",
    "MongoLogStore",
    # Errors
    "EngineError",
    "ValidationError",
    "GraphFormatError",
    "DanglingEdgeError",
    "InvalidHandleError",
    "UnknownBlockTypeError",
    "LoopMemberNotFoundError",
    "LoopMembershipError",
    "InvalidLoopError",
    "CyclicGraphError",
    "MissingFieldError",
    "CapabilityNotFoundError",
    "ConditionSyntaxError",
    "EvaluationError",
    "ReferenceResolutionError",
    "MissingSecretError",
    "CapabilityError",
    "BlockTimeoutError",
    "BlockExecutionError",
    "LoopConditionError",
    "StalledExecutionError",
    "ExecutionCancelled",
    "InvalidTransitionError",
]
