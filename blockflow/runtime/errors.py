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

"""Blockflow runtime error types.

Taxonomy:
- ValidationError: structural problems found before any block runs
- BlockExecutionError: a single block invocation failed or timed out
- LoopConditionError: a loop exit condition could not be evaluated
- StalledExecutionError: resolver invariant violation (internal bug)
- ExecutionCancelled: caller-initiated stop, not a workflow failure
"""

from dataclasses import dataclass, field


class EngineError(Exception):
    """Base class for all Blockflow runtime errors."""

    pass


# =========================================================================
# Validation errors
# =========================================================================


class ValidationError(EngineError):
    """Base class for errors raised before any block is invoked."""

    pass


@dataclass
class GraphFormatError(ValidationError):
    """Raised when a workflow document cannot be parsed into a graph."""

    message: str

    def __str__(self) -> str:
        return f"Malformed workflow: {self.message}"


@dataclass
class DanglingEdgeError(ValidationError):
    """Raised when an edge references a block that does not exist."""

    edge_id: str
    block_id: str

    def __str__(self) -> str:
        return f"Edge {self.edge_id} references unknown block: {self.block_id}"


@dataclass
class InvalidHandleError(ValidationError):
    """Raised when an edge uses a handle the block type does not expose."""

    edge_id: str
    block_id: str
    handle: str
    direction: str
    allowed: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        allowed = ", ".join(self.allowed) if self.allowed else "none"
        return (
            f"Edge {self.edge_id} uses unknown {self.direction} handle '{self.handle}' "
            f"on block {self.block_id} (allowed: {allowed})"
        )


@dataclass
class UnknownBlockTypeError(ValidationError):
    """Raised when a block declares a type with no registered schema."""

    block_id: str
    block_type: str

    def __str__(self) -> str:
        return f"Block {self.block_id} has unknown type '{self.block_type}'"


@dataclass
class LoopMemberNotFoundError(ValidationError):
    """Raised when a loop scope lists a block that does not exist."""

    loop_id: str
    block_id: str

    def __str__(self) -> str:
        return f"Loop {self.loop_id} references unknown block: {self.block_id}"


@dataclass
class LoopMembershipError(ValidationError):
    """Raised when a block belongs to more than one loop scope."""

    block_id: str
    loop_ids: list[str]

    def __str__(self) -> str:
        loops = ", ".join(self.loop_ids)
        return f"Block {self.block_id} belongs to more than one loop: {loops}"


@dataclass
class InvalidLoopError(ValidationError):
    """Raised when a loop scope is misconfigured."""

    loop_id: str
    message: str

    def __str__(self) -> str:
        return f"Invalid loop {self.loop_id}: {self.message}"


@dataclass
class CyclicGraphError(ValidationError):
    """Raised when a cycle is not contained within a declared loop scope."""

    block_ids: list[str]

    def __str__(self) -> str:
        blocks = " -> ".join(self.block_ids)
        return f"Workflow contains a cycle outside any loop: {blocks}"


@dataclass
class MissingFieldError(ValidationError):
    """Raised when a block lacks a required configuration field."""

    block_id: str
    field_name: str

    def __str__(self) -> str:
        return f"Block {self.block_id} is missing required field '{self.field_name}'"


@dataclass
class CapabilityNotFoundError(ValidationError):
    """Raised when a block's type/operation resolves to no capability."""

    block_id: str
    block_type: str
    operation: str | None = None

    def __str__(self) -> str:
        op = f" operation '{self.operation}'" if self.operation else ""
        return f"No capability for block {self.block_id} (type '{self.block_type}'{op})"


@dataclass
class ConditionSyntaxError(ValidationError):
    """Raised when a condition expression cannot be parsed."""

    expression: str
    message: str
    line: int | None = None
    column: int | None = None

    def __str__(self) -> str:
        location = ""
        if self.line is not None:
            location = f" at line {self.line}"
            if self.column is not None:
                location += f", column {self.column}"
        return f"Invalid expression '{self.expression}': {self.message}{location}"


# =========================================================================
# Evaluation errors (raised as causes inside block or loop failures)
# =========================================================================


@dataclass
class EvaluationError(EngineError):
    """Raised when expression evaluation fails."""

    expression: str
    message: str

    def __str__(self) -> str:
        return f"Evaluation error: {self.message} (expression: {self.expression})"


@dataclass
class ReferenceResolutionError(EngineError):
    """Raised when a reference names no block, input or loop."""

    reference: str
    message: str

    def __str__(self) -> str:
        return f"Reference error: {self.message} (reference: {self.reference})"


@dataclass
class MissingSecretError(EngineError):
    """Raised when a config value references a secret that was not supplied."""

    name: str

    def __str__(self) -> str:
        return f"Secret not provided: {self.name}"


@dataclass
class CapabilityError(EngineError):
    """Raised when a capability reports failure."""

    capability_id: str
    message: str

    def __str__(self) -> str:
        return f"Capability {self.capability_id} failed: {self.message}"


@dataclass
class BlockTimeoutError(EngineError):
    """Raised when a block invocation exceeds its timeout."""

    timeout: float

    def __str__(self) -> str:
        return f"Timed out after {self.timeout:g}s"


# =========================================================================
# Run-level errors
# =========================================================================


@dataclass
class BlockExecutionError(EngineError):
    """Raised when a block invocation fails; fatal to the run."""

    block_id: str
    cause: Exception
    block_name: str = ""

    def __str__(self) -> str:
        label = f"'{self.block_name}' ({self.block_id})" if self.block_name else self.block_id
        return f"Block {label} failed: {self.cause}"


@dataclass
class LoopConditionError(EngineError):
    """Raised when a loop exit condition fails to evaluate."""

    loop_id: str
    cause: Exception

    def __str__(self) -> str:
        return f"Loop {self.loop_id} exit condition failed: {self.cause}"


@dataclass
class StalledExecutionError(EngineError):
    """Raised when blocks remain but none can become ready."""

    pending: list[str]

    def __str__(self) -> str:
        blocks = ", ".join(self.pending)
        return f"Execution stalled with unresolved blocks: {blocks}"


@dataclass
class ExecutionCancelled(EngineError):
    """Raised when a run is stopped by its caller or by the run timeout."""

    reason: str

    def __str__(self) -> str:
        return f"Execution cancelled: {self.reason}"


@dataclass
class InvalidTransitionError(EngineError):
    """Raised when an invalid state transition is attempted."""

    subject: str
    from_state: str
    to_state: str

    def __str__(self) -> str:
        return (
            f"Invalid transition for {self.subject}: "
            f"cannot transition from '{self.from_state}' to '{self.to_state}'"
        )
