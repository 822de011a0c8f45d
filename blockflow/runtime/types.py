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

"""Blockflow runtime core type definitions."""

import re
import uuid
from datetime import UTC, datetime
from typing import NewType

# Type aliases for IDs
BlockId = NewType("BlockId", str)
EdgeId = NewType("EdgeId", str)
LoopId = NewType("LoopId", str)
RunId = NewType("RunId", str)
CapabilityId = NewType("CapabilityId", str)

# Default handle names used when an edge does not name one
DEFAULT_SOURCE_HANDLE = "source"
DEFAULT_TARGET_HANDLE = "target"

_WHITESPACE = re.compile(r"\s+")


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def run_id() -> RunId:
    """Generate a new RunId."""
    return RunId(generate_id())


def normalize_name(name: str) -> str:
    """Normalize a block name for reference lookups.

    Block names are matched case-insensitively with whitespace removed,
    so a block named "My Agent" is referenced as ``myagent``.
    """
    return _WHITESPACE.sub("", name).lower()


def utc_now() -> datetime:
    """Get the current UTC time."""
    return datetime.now(UTC)


def iso_timestamp(moment: datetime) -> str:
    """Format a UTC datetime as an ISO-8601 string with a Z suffix."""
    return moment.isoformat().replace("+00:00", "Z")
