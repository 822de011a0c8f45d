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

"""FastAPI application factory for the Blockflow server."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from .. import integrations
from ..config import BlockflowConfig, load_config
from ..runtime.capabilities import CapabilityRegistry, CapabilityResolver
from ..runtime.log_store import ExecutionLogStore, MemoryLogStore, MongoLogStore
from ..runtime.scheduler import ExecutionScheduler
from ..runtime.secrets import EnvSecretStore, SecretStore

logger = logging.getLogger(__name__)

# Environment prefix of secrets served by the default secret store
SECRET_ENV_PREFIX = "BLOCKFLOW_SECRET_"


def build_log_store(config: BlockflowConfig) -> ExecutionLogStore:
    """Create the execution log store named by ``config.server.log_store``.

    Raises:
        ValueError: If the backend name is unknown
    """
    backend = config.server.log_store
    if backend == "memory":
        return MemoryLogStore()
    if backend == "mongodb":
        return MongoLogStore.from_config(config.mongodb)
    raise ValueError(f"Unknown log store backend: {backend}")


def default_capabilities() -> CapabilityRegistry:
    """Control block capabilities plus the built-in integrations."""
    registry = CapabilityRegistry.with_builtins()
    integrations.register(registry)
    return registry


def create_app(
    config: BlockflowConfig | None = None,
    capabilities: CapabilityResolver | None = None,
    log_store: ExecutionLogStore | None = None,
    workflows: Mapping[str, Mapping[str, Any]] | None = None,
    secret_store: SecretStore | None = None,
) -> FastAPI:
    """Build and return the configured FastAPI application.

    Args:
        config: Blockflow configuration; loaded via :func:`load_config` when omitted
        capabilities: Capability resolver for block invocations; defaults to
            :func:`default_capabilities`
        log_store: Execution log store; built from ``config`` when omitted
        workflows: Initially registered workflow documents, by workflow id
        secret_store: Store that decrypts secret references in requests;
            defaults to ``BLOCKFLOW_SECRET_*`` environment variables
    """
    config = config or load_config()
    log_store = log_store or build_log_store(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Server starting: log_store=%s workflows=%d",
            type(log_store).__name__,
            len(app.state.workflows),
        )
        yield
        if isinstance(log_store, MongoLogStore):
            log_store.close()

    app = FastAPI(
        title="Blockflow",
        description="Workflow execution engine API",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.log_store = log_store
    app.state.workflows = {key: dict(value) for key, value in (workflows or {}).items()}
    app.state.secret_store = secret_store or EnvSecretStore(prefix=SECRET_ENV_PREFIX)
    app.state.scheduler = ExecutionScheduler(
        capabilities or default_capabilities(), config=config.engine
    )

    from .routes import register_routes

    register_routes(app)

    return app
