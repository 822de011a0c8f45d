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

"""Tests for the capability registry, resolvers, hook loading and HTTP capabilities."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from blockflow.runtime import (
    CapabilityRegistry,
    CapabilityResolver,
    CapabilityResult,
    CompositeCapabilityResolver,
    HttpCapability,
    ModuleCapabilityLoader,
)
from blockflow.runtime.capabilities import (
    CONDITION_CAPABILITY,
    RESPONSE_CAPABILITY,
    STARTER_CAPABILITY,
)


def _call(resolver, capability_id, config=None, secrets=None, inputs=None):
    return asyncio.run(resolver.call(capability_id, config or {}, secrets or {}, inputs or {}))


def _response(status=200, json_body=None, text="", content_type="application/json"):
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.headers = {"Content-Type": content_type}
    response.json.return_value = json_body
    response.text = text
    return response


class TestCapabilityResult:
    def test_plain_value_is_success(self):
        result = CapabilityResult.from_value({"response": "hi"})
        assert result.success is True
        assert result.output == {"response": "hi"}

    def test_result_shaped_dict(self):
        result = CapabilityResult.from_value({"success": False, "error": "nope"})
        assert result.success is False
        assert result.error == "nope"

    def test_dict_with_extra_keys_is_output(self):
        value = {"success": True, "rows": 3}
        assert CapabilityResult.from_value(value).output == value

    def test_result_passes_through(self):
        result = CapabilityResult.ok(1)
        assert CapabilityResult.from_value(result) is result


class TestCapabilityRegistry:
    def test_resolve_by_type(self):
        registry = CapabilityRegistry()
        registry.register("echo", lambda c, s, i: c)
        registry.bind("agent", "echo")
        assert registry.resolve("agent") == "echo"

    def test_operation_binding_wins(self):
        registry = CapabilityRegistry()
        registry.register("notion.read", lambda c, s, i: "read")
        registry.register("notion.any", lambda c, s, i: "any")
        registry.bind("notion", "notion.any")
        registry.bind("notion", "notion.read", operation="read_notion")
        assert registry.resolve("notion", "read_notion") == "notion.read"
        assert registry.resolve("notion", "write_notion") == "notion.any"

    def test_handler_named_after_type(self):
        registry = CapabilityRegistry()
        registry.register("function", lambda c, s, i: None)
        assert registry.resolve("function") == "function"

    def test_unresolvable(self):
        registry = CapabilityRegistry()
        registry.bind("agent", "missing")
        assert registry.resolve("agent") is None

    def test_satisfies_protocol(self):
        assert isinstance(CapabilityRegistry(), CapabilityResolver)

    def test_sync_handler(self):
        registry = CapabilityRegistry()
        registry.register("add", lambda c, s, i: c["a"] + c["b"])
        result = _call(registry, "add", {"a": 1, "b": 2})
        assert result.success and result.output == 3

    def test_async_handler(self):
        async def handler(config, secrets, inputs):
            await asyncio.sleep(0)
            return {"seen": sorted(inputs)}

        registry = CapabilityRegistry()
        registry.register("async", handler)
        result = _call(registry, "async", inputs={"b": 1, "a": 2})
        assert result.output == {"seen": ["a", "b"]}

    def test_async_callable_object(self):
        class Handler:
            async def __call__(self, config, secrets, inputs):
                return "called"

        registry = CapabilityRegistry()
        registry.register("obj", Handler())
        assert _call(registry, "obj").output == "called"

    def test_exception_becomes_redacted_failure(self):
        def handler(config, secrets, inputs):
            raise RuntimeError(f"bad token {secrets['KEY']}")

        registry = CapabilityRegistry()
        registry.register("leaky", handler)
        result = _call(registry, "leaky", secrets={"KEY": "s3cr3t"})
        assert result.success is False
        assert result.error == "bad token ***"

    def test_unknown_capability(self):
        result = _call(CapabilityRegistry(), "nope")
        assert result.success is False
        assert "Unknown capability" in result.error


class TestBuiltins:
    @pytest.fixture
    def registry(self):
        return CapabilityRegistry.with_builtins()

    def test_bindings(self, registry):
        assert registry.resolve("starter") == STARTER_CAPABILITY
        assert registry.resolve("condition") == CONDITION_CAPABILITY
        assert registry.resolve("response") == RESPONSE_CAPABILITY

    def test_starter_echoes_input(self, registry):
        result = _call(registry, STARTER_CAPABILITY, {"input": {"q": 1}})
        assert result.output == {"input": {"q": 1}}

    def test_condition_selects_handle(self, registry):
        assert _call(registry, CONDITION_CAPABILITY, {"condition": True}).output == {
            "result": True,
            "selectedHandle": "true",
        }
        assert _call(registry, CONDITION_CAPABILITY, {"condition": 0}).output["selectedHandle"] == "false"

    def test_response_defaults_status(self, registry):
        assert _call(registry, RESPONSE_CAPABILITY, {"data": "x"}).output == {"data": "x", "status": 200}


class TestCompositeCapabilityResolver:
    def test_first_resolver_wins_and_owns_calls(self):
        first = CapabilityRegistry()
        first.register("agent", lambda c, s, i: "first")
        second = CapabilityRegistry()
        second.register("agent", lambda c, s, i: "second")
        second.register("api", lambda c, s, i: "api")

        composite = CompositeCapabilityResolver(first, second)
        assert composite.resolve("agent") == "agent"
        assert composite.resolve("api") == "api"
        assert _call(composite, "agent").output == "first"
        assert _call(composite, "api").output == "api"

    def test_call_before_resolve_fails(self):
        composite = CompositeCapabilityResolver(CapabilityRegistry())
        assert _call(composite, "agent").success is False

    def test_nothing_resolves(self):
        assert CompositeCapabilityResolver().resolve("agent") is None


class TestModuleCapabilityLoader:
    def test_file_uri_default_entrypoint(self, tmp_path):
        hook = tmp_path / "hooks.py"
        hook.write_text(
            "def register(registry):\n"
            "    registry.register('shout', lambda c, s, i: c['text'].upper())\n"
            "    registry.bind('agent', 'shout')\n"
        )
        registry = CapabilityRegistry()
        ModuleCapabilityLoader(registry).load(f"file://{hook}")
        assert registry.resolve("agent") == "shout"
        assert _call(registry, "shout", {"text": "hi"}).output == "HI"

    def test_file_uri_named_entrypoint(self, tmp_path):
        hook = tmp_path / "more.py"
        hook.write_text("def install(registry):\n    registry.register('x', lambda c, s, i: 1)\n")
        registry = CapabilityRegistry()
        ModuleCapabilityLoader(registry).load(f"file://{hook}:install")
        assert registry.has("x")

    def test_module_is_cached(self, tmp_path):
        hook = tmp_path / "counted.py"
        hook.write_text("CALLS = []\ndef register(registry):\n    CALLS.append(1)\n")
        loader = ModuleCapabilityLoader(CapabilityRegistry())
        loader.load(f"file://{hook}")
        loader.load(f"file://{hook}")
        module = loader.module_cache[f"file://{hook}"]
        assert module.CALLS == [1, 1]

    def test_dotted_module(self):
        registry = CapabilityRegistry()
        ModuleCapabilityLoader(registry).load("blockflow.runtime.capabilities:register_builtins")
        assert registry.resolve("starter") == STARTER_CAPABILITY

    def test_missing_entrypoint(self, tmp_path):
        hook = tmp_path / "empty.py"
        hook.write_text("VALUE = 1\n")
        with pytest.raises(AttributeError):
            ModuleCapabilityLoader(CapabilityRegistry()).load(f"file://{hook}")

    def test_entrypoint_not_callable(self, tmp_path):
        hook = tmp_path / "value.py"
        hook.write_text("register = 1\n")
        with pytest.raises(TypeError):
            ModuleCapabilityLoader(CapabilityRegistry()).load(f"file://{hook}")

    def test_missing_module(self):
        with pytest.raises(ImportError):
            ModuleCapabilityLoader(CapabilityRegistry()).load("blockflow_no_such_module")


class TestHttpCapability:
    def test_builds_request_from_config(self):
        capability = HttpCapability(
            url=lambda p: f"https://api.example.com/items/{p['itemId']}",
            method="post",
            headers=lambda p: {"Authorization": f"Bearer {p['apiKey']}"},
            body=lambda p: {"name": p["name"]},
        )
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(json_body={"id": "7"})
            result = capability({"itemId": "7", "apiKey": "k", "name": "n"}, {}, {})

        request.assert_called_once_with(
            "POST",
            "https://api.example.com/items/7",
            headers={"Authorization": "Bearer k"},
            params=None,
            json={"name": "n"},
            timeout=30.0,
        )
        assert result.success and result.output == {"id": "7"}

    def test_get_sends_no_body(self):
        capability = HttpCapability(url="https://example.com", body={"ignored": True})
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(text="plain", content_type="text/plain")
            result = capability({}, {}, {})
        assert request.call_args.kwargs["json"] is None
        assert result.output == "plain"

    def test_error_status_fails(self):
        capability = HttpCapability(url="https://example.com")
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(status=404, json_body={"message": "missing"})
            result = capability({}, {}, {})
        assert result.success is False
        assert result.error.startswith("HTTP 404")

    def test_transform_response(self):
        capability = HttpCapability(
            url="https://example.com",
            transform_response=lambda r: {"status": r.status_code},
        )
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(status=204)
            result = capability({}, {}, {})
        assert result.output == {"status": 204}

    def test_registered_as_sync_handler(self):
        registry = CapabilityRegistry()
        registry.register("http", HttpCapability(url="https://example.com"))
        with patch("blockflow.runtime.capabilities.requests.request") as request:
            request.return_value = _response(json_body=[1, 2])
            result = _call(registry, "http")
        assert result.output == [1, 2]
