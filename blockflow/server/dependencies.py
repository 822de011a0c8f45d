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

"""Request-scoped accessors for server collaborators."""

from __future__ import annotations

from typing import Any

from fastapi import Request

from ..runtime.log_store import ExecutionLogStore
from ..runtime.scheduler import ExecutionScheduler
from ..runtime.secrets import SecretStore


def get_log_store(request: Request) -> ExecutionLogStore:
    return request.app.state.log_store


def get_scheduler(request: Request) -> ExecutionScheduler:
    return request.app.state.scheduler


def get_secret_store(request: Request) -> SecretStore:
    return request.app.state.secret_store


def get_workflows(request: Request) -> dict[str, dict[str, Any]]:
    return request.app.state.workflows
