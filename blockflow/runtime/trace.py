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

"""Execution logs and trace spans.

The recorder is a pure accumulator: one log entry and one span per block
invocation. Spans of loop members hang under a synthetic span for their
iteration. Output previews are redacted and truncated before they are
stored.
"""

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .graph import BlockInstance
from .secrets import redact
from .types import generate_id, iso_timestamp

ITERATION_SPAN_TYPE = "loop-iteration"


class SpanStatus:
    """Span status constants."""

    OK = "ok"
    ERROR = "error"


def _millis(start: datetime, end: datetime) -> float:
    return round((end - start).total_seconds() * 1000.0, 3)


@dataclass
class LogEntry:
    """Log entry for one block invocation."""

    block_id: str
    block_name: str
    block_type: str
    success: bool
    started_at: datetime
    ended_at: datetime
    duration_ms: float
    output: str | None = None
    error: str | None = None
    loop_id: str | None = None
    iteration: int | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "blockId": self.block_id,
            "blockName": self.block_name,
            "blockType": self.block_type,
            "success": self.success,
            "startedAt": iso_timestamp(self.started_at),
            "endedAt": iso_timestamp(self.ended_at),
            "durationMs": self.duration_ms,
            "output": self.output,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.loop_id is not None:
            result["loopId"] = self.loop_id
            result["iteration"] = self.iteration
        return result


@dataclass
class TraceSpan:
    """Timed record of one invocation, or of one loop iteration."""

    id: str
    name: str
    type: str
    start_time: datetime
    end_time: datetime
    status: str = SpanStatus.OK
    block_id: str | None = None
    loop_id: str | None = None
    iteration: int | None = None
    error: str | None = None
    children: list["TraceSpan"] = field(default_factory=list)

    @property
    def duration_ms(self) -> float:
        return _millis(self.start_time, self.end_time)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        result: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "blockId": self.block_id,
            "startTime": iso_timestamp(self.start_time),
            "endTime": iso_timestamp(self.end_time),
            "duration": self.duration_ms,
            "status": self.status,
            "children": [child.to_dict() for child in self.children],
        }
        if self.loop_id is not None:
            result["loopId"] = self.loop_id
            result["iteration"] = self.iteration
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class TraceSummary:
    """Top-level spans of a run and its wall-clock duration."""

    spans: list[TraceSpan] = field(default_factory=list)
    total_duration_ms: float = 0.0

    @classmethod
    def from_spans(cls, spans: Sequence[TraceSpan]) -> "TraceSummary":
        """Summarize spans; total duration runs from first start to last end."""
        ordered = sorted(spans, key=lambda s: s.start_time)
        if not ordered:
            return cls()
        first = min(span.start_time for span in ordered)
        last = max(span.end_time for span in ordered)
        return cls(spans=ordered, total_duration_ms=_millis(first, last))

    def to_dict(self) -> dict:
        return {
            "spans": [span.to_dict() for span in self.spans],
            "totalDuration": self.total_duration_ms,
        }


class TraceRecorder:
    """Accumulates log entries and spans for one run.

    Example:
        recorder = TraceRecorder(secrets=ctx.secrets)
        recorder.record(block, started, ended, output={"response": "hi"})
        recorder.summary().to_dict()
    """

    def __init__(
        self,
        secrets: Mapping[str, str] | None = None,
        preview_chars: int = 200,
    ) -> None:
        self.secrets = dict(secrets or {})
        self.preview_chars = preview_chars
        self._logs: list[LogEntry] = []
        self._spans: list[TraceSpan] = []
        self._iteration_spans: dict[tuple[str, int], TraceSpan] = {}

    @property
    def logs(self) -> list[LogEntry]:
        return list(self._logs)

    @property
    def spans(self) -> list[TraceSpan]:
        return list(self._spans)

    def record(
        self,
        block: BlockInstance,
        started_at: datetime,
        ended_at: datetime,
        output: Any = None,
        error: str | None = None,
        loop_id: str | None = None,
        iteration: int | None = None,
    ) -> LogEntry:
        """Record one finished invocation.

        Args:
            block: The invoked block
            started_at: When the invocation started
            ended_at: When the invocation finished
            output: The block's output on success
            error: Failure message; marks the invocation as failed
            loop_id: Owning loop, for loop members
            iteration: Loop iteration the invocation belongs to

        Returns:
            The appended log entry
        """
        error = redact(error, self.secrets) if error is not None else None
        entry = LogEntry(
            block_id=block.id,
            block_name=block.display_name,
            block_type=block.type,
            success=error is None,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=_millis(started_at, ended_at),
            output=self.preview(output) if error is None else None,
            error=error,
            loop_id=loop_id,
            iteration=iteration,
        )
        self._logs.append(entry)

        span = TraceSpan(
            id=generate_id(),
            name=block.display_name,
            type=block.type,
            block_id=block.id,
            start_time=started_at,
            end_time=ended_at,
            status=SpanStatus.OK if error is None else SpanStatus.ERROR,
            loop_id=loop_id,
            iteration=iteration,
            error=error,
        )
        if loop_id is not None and iteration is not None:
            self._attach_to_iteration(span, loop_id, iteration)
        else:
            self._spans.append(span)
        return entry

    def _attach_to_iteration(self, span: TraceSpan, loop_id: str, iteration: int) -> None:
        parent = self._iteration_spans.get((loop_id, iteration))
        if parent is None:
            parent = TraceSpan(
                id=generate_id(),
                name=f"{loop_id} iteration {iteration}",
                type=ITERATION_SPAN_TYPE,
                start_time=span.start_time,
                end_time=span.end_time,
                loop_id=loop_id,
                iteration=iteration,
            )
            self._iteration_spans[(loop_id, iteration)] = parent
            self._spans.append(parent)
        parent.children.append(span)
        parent.children.sort(key=lambda s: s.start_time)
        parent.start_time = min(parent.start_time, span.start_time)
        parent.end_time = max(parent.end_time, span.end_time)
        if span.status == SpanStatus.ERROR:
            parent.status = SpanStatus.ERROR

    def preview(self, output: Any) -> str | None:
        """Redacted, truncated rendering of an output for log entries."""
        if output is None:
            return None
        redacted = redact(output, self.secrets)
        text = redacted if isinstance(redacted, str) else json.dumps(redacted, default=str)
        if len(text) > self.preview_chars:
            return text[: self.preview_chars] + "..."
        return text

    def summary(self) -> TraceSummary:
        return TraceSummary.from_spans(self._spans)


def build_trace_spans(trace: "TraceRecorder | TraceSummary | Sequence[TraceSpan]") -> dict:
    """Build the persisted trace shape ``{spans, totalDuration}``.

    Accepts a recorder, a summary, or a plain sequence of spans.
    """
    if isinstance(trace, TraceRecorder):
        summary = trace.summary()
    elif isinstance(trace, TraceSummary):
        summary = trace
    else:
        summary = TraceSummary.from_spans(list(trace))
    return summary.to_dict()
