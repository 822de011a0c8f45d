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

"""Notion capabilities for ``notion`` blocks.

The block's ``operation`` field selects the capability:

=================  ==========================================
operation          request
=================  ==========================================
read_notion        GET the children of a page
write_notion       append a paragraph to a page
read_database      query a database
write_database     create a page in a database
update_database    update the properties of a database page
=================  ==========================================
"""

import re
from collections.abc import Mapping
from typing import Any

import requests

from ..runtime.capabilities import CapabilityRegistry, CapabilityResult, HttpCapability

NOTION_API = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

_UNDASHED_ID = re.compile(
    r"^([0-9a-f]{8})([0-9a-f]{4})([0-9a-f]{4})([0-9a-f]{4})([0-9a-f]{12})$", re.IGNORECASE
)


def format_id(value: str) -> str:
    """Insert dashes into a 32-character Notion id; other ids pass through."""
    return _UNDASHED_ID.sub(r"\1-\2-\3-\4-\5", str(value).strip())


def _headers(params: Mapping[str, Any]) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {params['apiKey']}",
        "Notion-Version": NOTION_VERSION,
        "Content-Type": "application/json",
    }


def _json(response: requests.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        data = {}
    return data if isinstance(data, dict) else {}


def _result(response: requests.Response, output: Any) -> CapabilityResult:
    if response.ok:
        return CapabilityResult.ok(output)
    message = _json(response).get("message") or response.text[:200]
    return CapabilityResult.failure(f"Notion API error {response.status_code}: {message}")


def _plain_text(block: Mapping[str, Any]) -> str:
    payload = block.get(block.get("type", ""), {})
    rich_text = payload.get("rich_text", []) if isinstance(payload, Mapping) else []
    return "".join(part.get("plain_text", "") for part in rich_text)


def _page_content(response: requests.Response) -> CapabilityResult:
    blocks = _json(response).get("results", [])
    text = "\n".join(t for t in (_plain_text(b) for b in blocks) if t)
    return _result(response, {"content": text, "blocks": blocks})


def _page_ref(response: requests.Response) -> CapabilityResult:
    data = _json(response)
    return _result(response, {"pageId": data.get("id"), "url": data.get("url")})


def _records(response: requests.Response) -> CapabilityResult:
    data = _json(response)
    output = {"records": data.get("results", []), "nextCursor": data.get("next_cursor")}
    return _result(response, output)


read_page = HttpCapability(
    url=lambda p: f"{NOTION_API}/blocks/{format_id(p['pageId'])}/children",
    headers=_headers,
    transform_response=_page_content,
)

write_page = HttpCapability(
    url=lambda p: f"{NOTION_API}/blocks/{format_id(p['pageId'])}/children",
    method="PATCH",
    headers=_headers,
    body=lambda p: {
        "children": [
            {
                "object": "block",
                "type": "paragraph",
                "paragraph": {
                    "rich_text": [{"type": "text", "text": {"content": str(p["content"])}}]
                },
            }
        ]
    },
    transform_response=lambda r: _result(r, {"pageId": _json(r).get("id")}),
)

read_database = HttpCapability(
    url=lambda p: f"{NOTION_API}/databases/{format_id(p['databaseId'])}/query",
    method="POST",
    headers=_headers,
    body=lambda p: {
        key: value
        for key, value in (
            ("filter", p.get("filter")),
            ("sorts", p.get("sorts")),
            ("page_size", int(p.get("pageSize") or 100)),
        )
        if value is not None
    },
    transform_response=_records,
)

write_database = HttpCapability(
    url=f"{NOTION_API}/pages",
    method="POST",
    headers=_headers,
    body=lambda p: {
        "parent": {"database_id": format_id(p["databaseId"])},
        "properties": p["properties"],
    },
    transform_response=_page_ref,
)

update_database = HttpCapability(
    url=lambda p: f"{NOTION_API}/pages/{format_id(p['pageId'])}",
    method="PATCH",
    headers=_headers,
    body=lambda p: {"properties": p["properties"]},
    transform_response=_page_ref,
)

CAPABILITIES: dict[str, HttpCapability] = {
    "notion_read": read_page,
    "notion_write": write_page,
    "notion_database_read": read_database,
    "notion_database_write": write_database,
    "notion_database_update": update_database,
}

# Block operation -> capability id
OPERATIONS = {
    "read_notion": "notion_read",
    "write_notion": "notion_write",
    "read_database": "notion_database_read",
    "write_database": "notion_database_write",
    "update_database": "notion_database_update",
}


def register(registry: CapabilityRegistry) -> None:
    """Register the Notion capabilities and bind them by operation."""
    for capability_id, capability in CAPABILITIES.items():
        registry.register(capability_id, capability)
    for operation, capability_id in OPERATIONS.items():
        registry.bind("notion", capability_id, operation=operation)
