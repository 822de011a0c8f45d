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

"""Capability resolution and invocation.

A capability is the external operation a block's type and ``operation``
field resolve to, keyed by a stable string id. The engine resolves every
block once at run start and afterwards calls capabilities by id through
one uniform contract::

    handler(config, secrets, inputs) -> CapabilityResult | output

Handlers may be plain functions or coroutines.
"""

import asyncio
import functools
import importlib
import importlib.util
import inspect
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import Executor
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import requests

from .secrets import redact
from .types import CapabilityId

logger = logging.getLogger(__name__)

CapabilityHandler = Callable[[Mapping[str, Any], Mapping[str, str], Mapping[str, Any]], Any]

# Executor for sync handlers; None means the event loop default
sync_executor: ContextVar[Executor | None] = ContextVar("sync_executor", default=None)

# Capability ids of the engine's control blocks
STARTER_CAPABILITY = CapabilityId("blockflow.starter")
CONDITION_CAPABILITY = CapabilityId("blockflow.condition")
RESPONSE_CAPABILITY = CapabilityId("blockflow.response")


@dataclass
class CapabilityResult:
    """Normalized outcome of one capability call."""

    success: bool
    output: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, output: Any = None) -> "CapabilityResult":
        return cls(success=True, output=output)

    @classmethod
    def failure(cls, error: str) -> "CapabilityResult":
        return cls(success=False, error=error)

    @classmethod
    def from_value(cls, value: Any) -> "CapabilityResult":
        """Normalize a handler's return value.

        A dict shaped like ``{"success": ..., "output": ...}`` is taken as
        a result; any other value is a successful output.
        """
        if isinstance(value, CapabilityResult):
            return value
        if (
            isinstance(value, Mapping)
            and isinstance(value.get("success"), bool)
            and set(value) <= {"success", "output", "error"}
        ):
            return cls(
                success=value["success"],
                output=value.get("output"),
                error=value.get("error"),
            )
        return cls.ok(value)

    def to_dict(self) -> dict:
        return {"success": self.success, "output": self.output, "error": self.error}


@runtime_checkable
class CapabilityResolver(Protocol):
    """Protocol for capability resolvers.

    Implementations must be safe for concurrent use by simultaneous
    invocations and runs.
    """

    def resolve(self, block_type: str, operation: str | None = None) -> CapabilityId | None:
        """Map a block type and operation to a capability id.

        Returns:
            The capability id, or None if nothing handles the pair
        """
        ...

    async def call(
        self,
        capability_id: CapabilityId,
        config: Mapping[str, Any],
        secrets: Mapping[str, str],
        inputs: Mapping[str, Any],
    ) -> CapabilityResult:
        """Invoke a capability.

        Never raises for handler failures; they come back as an
        unsuccessful CapabilityResult.
        """
        ...


class CapabilityRegistry:
    """In-memory capability resolver.

    Handlers are registered under capability ids; bindings map a block
    type, optionally narrowed to one operation, onto those ids.

    Example:
        registry = CapabilityRegistry.with_builtins()
        registry.register("openai.chat", chat_handler)
        registry.bind("agent", "openai.chat")
        registry.bind("notion", "notion_write", operation="write_notion")
    """

    def __init__(self) -> None:
        self._handlers: dict[CapabilityId, CapabilityHandler] = {}
        self._bindings: dict[tuple[str, str | None], CapabilityId] = {}

    @classmethod
    def with_builtins(cls) -> "CapabilityRegistry":
        """Registry pre-loaded with the control block capabilities."""
        registry = cls()
        register_builtins(registry)
        return registry

    def register(self, capability_id: str, handler: CapabilityHandler) -> None:
        """Register a handler under a capability id.

        Args:
            capability_id: Stable capability id
            handler: Function or coroutine (config, secrets, inputs) -> result
        """
        self._handlers[CapabilityId(capability_id)] = handler

    def bind(self, block_type: str, capability_id: str, operation: str | None = None) -> None:
        """Bind a block type (and optionally one operation) to a capability."""
        self._bindings[(block_type, operation)] = CapabilityId(capability_id)

    def has(self, capability_id: str) -> bool:
        return capability_id in self._handlers

    def resolve(self, block_type: str, operation: str | None = None) -> CapabilityId | None:
        """Resolve by exact (type, operation) binding, then the type-wide binding.

        A handler registered under the block type itself is the last
        fallback.
        """
        for key in ((block_type, operation), (block_type, None)):
            capability_id = self._bindings.get(key)
            if capability_id is not None and capability_id in self._handlers:
                return capability_id
        if block_type in self._handlers:
            return CapabilityId(block_type)
        return None

    async def call(
        self,
        capability_id: CapabilityId,
        config: Mapping[str, Any],
        secrets: Mapping[str, str],
        inputs: Mapping[str, Any],
    ) -> CapabilityResult:
        """Invoke a registered handler, running sync handlers off the event loop."""
        handler = self._handlers.get(capability_id)
        if handler is None:
            return CapabilityResult.failure(f"Unknown capability: {capability_id}")
        try:
            if _is_async(handler):
                value = await handler(config, secrets, inputs)
            else:
                value = await asyncio.get_running_loop().run_in_executor(
                    sync_executor.get(), functools.partial(handler, config, secrets, inputs)
                )
        except Exception as e:
            error = redact(str(e) or type(e).__name__, secrets)
            logger.warning("Capability failed: capability_id=%s error=%s", capability_id, error)
            return CapabilityResult.failure(error)
        return CapabilityResult.from_value(value)


class CompositeCapabilityResolver:
    """Chains multiple resolvers with priority ordering.

    The first resolver that resolves a block type wins, and later calls
    for that capability id are routed back to it.
    """

    def __init__(self, *resolvers: CapabilityResolver) -> None:
        self._resolvers = list(resolvers)
        self._owners: dict[CapabilityId, CapabilityResolver] = {}

    def resolve(self, block_type: str, operation: str | None = None) -> CapabilityId | None:
        for resolver in self._resolvers:
            capability_id = resolver.resolve(block_type, operation)
            if capability_id is not None:
                self._owners.setdefault(capability_id, resolver)
                return capability_id
        return None

    async def call(
        self,
        capability_id: CapabilityId,
        config: Mapping[str, Any],
        secrets: Mapping[str, str],
        inputs: Mapping[str, Any],
    ) -> CapabilityResult:
        resolver = self._owners.get(capability_id)
        if resolver is None:
            return CapabilityResult.failure(f"Unknown capability: {capability_id}")
        return await resolver.call(capability_id, config, secrets, inputs)


class ModuleCapabilityLoader:
    """Loads capability registration hooks from Python modules.

    A hook is a callable taking a CapabilityRegistry. Supports two URI
    formats, each optionally followed by ``:function`` (default
    ``register``):

    - ``file:///path/to/module.py`` loaded via ``spec_from_file_location``
    - ``my.package.module`` loaded via ``importlib.import_module``
    """

    DEFAULT_ENTRYPOINT = "register"

    def __init__(self, registry: CapabilityRegistry) -> None:
        self._registry = registry
        self._module_cache: dict[str, Any] = {}

    def load(self, uri: str) -> None:
        """Import a hook and let it register capabilities.

        Raises:
            ImportError: If the module cannot be loaded
            AttributeError: If the entrypoint is not found
            TypeError: If the entrypoint is not callable
        """
        module_uri, entrypoint = self._split(uri)
        module = self._import_module(module_uri)
        hook = getattr(module, entrypoint)
        if not callable(hook):
            raise TypeError(f"Entrypoint '{entrypoint}' in '{module_uri}' is not callable")
        hook(self._registry)
        logger.info("Capabilities loaded: uri=%s", uri)

    def _split(self, uri: str) -> tuple[str, str]:
        prefix = ""
        rest = uri
        if uri.startswith("file://"):
            prefix, rest = "file://", uri[7:]
        if ":" in rest:
            module_uri, entrypoint = rest.rsplit(":", 1)
        else:
            module_uri, entrypoint = rest, self.DEFAULT_ENTRYPOINT
        return prefix + module_uri, entrypoint

    def _import_module(self, module_uri: str) -> Any:
        if module_uri in self._module_cache:
            return self._module_cache[module_uri]

        if module_uri.startswith("file://"):
            file_path = module_uri[7:]
            name = "_blockflow_capabilities_" + str(abs(hash(file_path)))
            spec = importlib.util.spec_from_file_location(name, file_path)
            if spec is None or spec.loader is None:
                raise ImportError(f"Cannot load module from {file_path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
        else:
            module = importlib.import_module(module_uri)

        self._module_cache[module_uri] = module
        return module

    @property
    def module_cache(self) -> dict[str, Any]:
        """Expose cache for testing."""
        return self._module_cache


ParamBuilder = Callable[[Mapping[str, Any]], Any]


@dataclass
class HttpCapability:
    """Declarative HTTP capability.

    Each request part is either a constant or a builder called with the
    block's resolved config (secrets already substituted). The response
    is mapped with ``transform_response`` when given; otherwise the JSON
    (or text) body becomes the output and non-2xx statuses fail.

    Example:
        HttpCapability(
            url=lambda p: f"https://api.example.com/items/{p['itemId']}",
            headers=lambda p: {"Authorization": f"Bearer {p['apiKey']}"},
        )
    """

    url: str | ParamBuilder
    method: str | ParamBuilder = "GET"
    headers: Mapping[str, str] | ParamBuilder | None = None
    params: Mapping[str, Any] | ParamBuilder | None = None
    body: Any = None
    transform_response: Callable[[requests.Response], Any] | None = None
    timeout: float = 30.0

    def __call__(
        self,
        config: Mapping[str, Any],
        secrets: Mapping[str, str],
        inputs: Mapping[str, Any],
    ) -> CapabilityResult:
        params = dict(config)
        method = str(_build(self.method, params)).upper()
        url = _build(self.url, params)
        headers = _build(self.headers, params) or {}
        query = _build(self.params, params) or None
        body = _build(self.body, params)

        logger.debug("HTTP capability request: method=%s url=%s", method, url)
        response = requests.request(
            method,
            url,
            headers=dict(headers),
            params=query,
            json=body if method not in ("GET", "HEAD") else None,
            timeout=self.timeout,
        )
        if self.transform_response is not None:
            return CapabilityResult.from_value(self.transform_response(response))
        return _default_transform(response)


def _is_async(handler: Any) -> bool:
    """Check for a coroutine function or an object with an async __call__."""
    return inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
        getattr(handler, "__call__", None)
    )


def _build(part: Any, params: Mapping[str, Any]) -> Any:
    return part(params) if callable(part) else part


def _default_transform(response: requests.Response) -> CapabilityResult:
    content_type = response.headers.get("Content-Type", "")
    if "json" in content_type:
        data = response.json()
    else:
        data = response.text
    if response.ok:
        return CapabilityResult.ok(data)
    return CapabilityResult.failure(f"HTTP {response.status_code}: {str(data)[:200]}")


# =========================================================================
# Control block capabilities
# =========================================================================


async def _starter(config: Mapping[str, Any], secrets: Mapping[str, str], inputs: Mapping[str, Any]):
    value = config.get("input")
    return {"input": dict(value) if isinstance(value, Mapping) else value}


async def _condition(config: Mapping[str, Any], secrets: Mapping[str, str], inputs: Mapping[str, Any]):
    result = bool(config.get("condition"))
    return {"result": result, "selectedHandle": "true" if result else "false"}


async def _response(config: Mapping[str, Any], secrets: Mapping[str, str], inputs: Mapping[str, Any]):
    return {"data": config.get("data"), "status": config.get("status", 200)}


def register_builtins(registry: CapabilityRegistry) -> None:
    """Register and bind the starter, condition and response capabilities."""
    for block_type, capability_id, handler in (
        ("starter", STARTER_CAPABILITY, _starter),
        ("condition", CONDITION_CAPABILITY, _condition),
        ("response", RESPONSE_CAPABILITY, _response),
    ):
        registry.register(capability_id, handler)
        registry.bind(block_type, capability_id)
