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

"""Generic HTTP request capability for ``api`` blocks."""

from collections.abc import Mapping
from typing import Any

from ..runtime.capabilities import CapabilityRegistry, HttpCapability

API_CAPABILITY = "http_request"


def _headers(params: Mapping[str, Any]) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    headers.update({str(k): str(v) for k, v in (params.get("headers") or {}).items()})
    return headers


http_request = HttpCapability(
    url=lambda p: p["url"],
    method=lambda p: p.get("method") or "GET",
    headers=_headers,
    params=lambda p: p.get("params"),
    body=lambda p: p.get("body"),
)


def register(registry: CapabilityRegistry) -> None:
    registry.register(API_CAPABILITY, http_request)
    registry.bind("api", API_CAPABILITY)
