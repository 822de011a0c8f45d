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

"""Blockflow state machine definitions.

There are three state machines:
- RunState: lifecycle of a whole execution run
- LoopState: lifecycle of one loop scope within a run
- BlockStatus: per-block bookkeeping used by the resolver
"""

from .errors import InvalidTransitionError


class RunState:
    """Run state constants."""

    INITIALIZING = "run.Initializing"
    RUNNING = "run.Running"
    SUCCEEDED = "run.Succeeded"
    FAILED = "run.Failed"
    CANCELLED = "run.Cancelled"

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        """Check if state is terminal."""
        return state in (cls.SUCCEEDED, cls.FAILED, cls.CANCELLED)


class LoopState:
    """Loop scope state constants."""

    IDLE = "loop.Idle"
    RUNNING = "loop.Running"
    COMPLETED = "loop.Completed"


class BlockStatus:
    """Block status constants."""

    PENDING = "block.Pending"
    RUNNING = "block.Running"
    COMPLETED = "block.Completed"
    SKIPPED = "block.Skipped"
    FAILED = "block.Failed"

    @classmethod
    def is_resolved(cls, status: str) -> bool:
        """Check if a block has finished for the current pass."""
        return status in (cls.COMPLETED, cls.SKIPPED)


RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    RunState.INITIALIZING: frozenset({RunState.RUNNING, RunState.FAILED}),
    RunState.RUNNING: frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.CANCELLED}),
}


# A loop pruned before it ever starts goes straight from Idle to Completed.
# Running -> Running is the re-entry for the next iteration.
LOOP_TRANSITIONS: dict[str, frozenset[str]] = {
    LoopState.IDLE: frozenset({LoopState.RUNNING, LoopState.COMPLETED}),
    LoopState.RUNNING: frozenset({LoopState.RUNNING, LoopState.COMPLETED}),
}


# Completed/Skipped -> Pending only happens when a loop resets its members.
BLOCK_TRANSITIONS: dict[str, frozenset[str]] = {
    BlockStatus.PENDING: frozenset({BlockStatus.RUNNING, BlockStatus.SKIPPED}),
    BlockStatus.RUNNING: frozenset({BlockStatus.COMPLETED, BlockStatus.FAILED}),
    BlockStatus.COMPLETED: frozenset({BlockStatus.PENDING}),
    BlockStatus.SKIPPED: frozenset({BlockStatus.PENDING}),
}


def can_transition(from_state: str, to_state: str, transitions: dict[str, frozenset[str]]) -> bool:
    """Check whether a transition is allowed by a transition table."""
    return to_state in transitions.get(from_state, frozenset())


def check_transition(
    subject: str,
    from_state: str,
    to_state: str,
    transitions: dict[str, frozenset[str]],
) -> str:
    """Validate a transition and return the new state.

    Args:
        subject: What is transitioning (run id, loop id or block id)
        from_state: The current state
        to_state: The requested state
        transitions: The transition table to use

    Returns:
        The new state

    Raises:
        InvalidTransitionError: If the table does not allow the transition
    """
    if not can_transition(from_state, to_state, transitions):
        raise InvalidTransitionError(subject, from_state, to_state)
    return to_state
