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

"""Tests for the built-in api and Notion capabilities."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from blockflow import integrations
from blockflow.integrations.api import API_CAPABILITY
from blockflow.integrations.notion import NOTION_VERSION, format_id
from blockflow.runtime import CapabilityRegistry, ExecutionScheduler
from tests.workflow_helpers import block, document, edge, starter

PAGE_ID = "0123456789abcdef0123456789abcdef"
DASHED_PAGE_ID = "01234567-89ab-cdef-0123-456789abcdef"


def _response(status=200, json_body=None):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.headers = {"Content-Type": "application/json"}
    response.json.return_value = json_body if json_body is not None else {}
    response.text = ""
    return response


@pytest.fixture
def registry():
    registry = CapabilityRegistry.with_builtins()
    integrations.register(registry)
    return registry


def _call(registry, block_type, config, operation=None):
    capability_id = registry.resolve(block_type, operation)
    return asyncio.run(registry.call(capability_id, config, {}, {}))


class TestApiCapability:
    def test_binding(self, registry):
        assert registry.resolve("api") == API_CAPABILITY

    def test_request(self, registry):
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(json_body={"ok": True})
            result = _call(
                registry,
                "api",
                {
                    "url": "https://example.com/items",
                    "method": "post",
                    "headers": {"X-Trace": 1},
                    "params": {"page": 2},
                    "body": {"name": "x"},
                },
            )

        assert result.output == {"ok": True}
        args, kwargs = request.call_args
        assert args == ("POST", "https://example.com/items")
        assert kwargs["headers"] == {"Content-Type": "application/json", "X-Trace": "1"}
        assert kwargs["params"] == {"page": 2}
        assert kwargs["json"] == {"name": "x"}

    def test_runs_inside_a_workflow(self, registry):
        doc = document(
            [starter(), block("call", "api", url="https://example.com/<start.input.path>")],
            [edge("start", "call")],
        )
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(json_body={"id": 1})
            result = ExecutionScheduler(registry).execute(doc, {"path": "users"})

        assert result.success
        assert result.output == {"id": 1}
        assert request.call_args.args == ("GET", "https://example.com/users")


class TestNotionCapabilities:
    def test_format_id(self):
        assert format_id(PAGE_ID) == DASHED_PAGE_ID
        assert format_id(DASHED_PAGE_ID) == DASHED_PAGE_ID

    def test_bindings_by_operation(self, registry):
        assert registry.resolve("notion", "read_notion") == "notion_read"
        assert registry.resolve("notion", "update_database") == "notion_database_update"
        assert registry.resolve("notion", "unknown") is None

    def test_read_page(self, registry):
        body = {
            "results": [
                {"type": "paragraph", "paragraph": {"rich_text": [{"plain_text": "Hello"}]}},
                {"type": "divider", "divider": {}},
                {"type": "heading_1", "heading_1": {"rich_text": [{"plain_text": "World"}]}},
            ]
        }
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(json_body=body)
            result = _call(registry, "notion", {"pageId": PAGE_ID, "apiKey": "k"}, "read_notion")

        assert result.output["content"] == "Hello\nWorld"
        args, kwargs = request.call_args
        assert args == ("GET", f"https://api.notion.com/v1/blocks/{DASHED_PAGE_ID}/children")
        assert kwargs["headers"]["Authorization"] == "Bearer k"
        assert kwargs["headers"]["Notion-Version"] == NOTION_VERSION

    def test_query_database(self, registry):
        body = {"results": [{"id": "r1"}], "next_cursor": "c2"}
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(json_body=body)
            result = _call(
                registry,
                "notion",
                {"databaseId": PAGE_ID, "apiKey": "k", "pageSize": 10},
                "read_database",
            )

        assert result.output == {"records": [{"id": "r1"}], "nextCursor": "c2"}
        assert request.call_args.kwargs["json"] == {"page_size": 10}

    def test_write_database(self, registry):
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(json_body={"id": "p1", "url": "https://notion.so/p1"})
            result = _call(
                registry,
                "notion",
                {"databaseId": PAGE_ID, "apiKey": "k", "properties": {"Name": {}}},
                "write_database",
            )

        assert result.output == {"pageId": "p1", "url": "https://notion.so/p1"}
        assert request.call_args.kwargs["json"] == {
            "parent": {"database_id": DASHED_PAGE_ID},
            "properties": {"Name": {}},
        }

    def test_api_error(self, registry):
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(status=401, json_body={"message": "API token is invalid."})
            result = _call(
                registry,
                "notion",
                {"pageId": PAGE_ID, "apiKey": "k", "properties": {}},
                "update_database",
            )

        assert result.success is False
        assert result.error == "Notion API error 401: API token is invalid."
        assert request.call_args.args[0] == "PATCH"
