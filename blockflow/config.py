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

"""Blockflow configuration management.

Provides configuration dataclasses for the execution engine, the
execution log store and the HTTP server, and a loader that reads from
config files or environment variables.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


def _env_float(name: str, default: float | None) -> float | None:
    value = os.environ.get(name, "")
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    return int(value) if value else default


@dataclass
class EngineConfig:
    """Execution engine configuration.

    Attributes:
        block_timeout_s: Per-invocation timeout in seconds
        run_timeout_s: Whole-run timeout in seconds; None disables it
        max_concurrent_blocks: Cap on simultaneous invocations; 0 is unlimited
        output_preview_chars: Length of output previews in log entries
    """

    block_timeout_s: float = 30.0
    run_timeout_s: float | None = None
    max_concurrent_blocks: int = 0
    output_preview_chars: int = 200

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        """Create from a dictionary.

        Keys may use either snake_case (``block_timeout_s``) or
        camelCase (``blockTimeout``).
        """
        return cls(
            block_timeout_s=float(
                data.get("block_timeout_s", data.get("blockTimeout", cls.block_timeout_s))
            ),
            run_timeout_s=data.get("run_timeout_s", data.get("runTimeout", cls.run_timeout_s)),
            max_concurrent_blocks=int(
                data.get(
                    "max_concurrent_blocks",
                    data.get("maxConcurrentBlocks", cls.max_concurrent_blocks),
                )
            ),
            output_preview_chars=int(
                data.get(
                    "output_preview_chars",
                    data.get("outputPreviewChars", cls.output_preview_chars),
                )
            ),
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Create from environment variables.

        Recognised variables (all optional – defaults apply for missing vars):
            BLOCKFLOW_BLOCK_TIMEOUT
            BLOCKFLOW_RUN_TIMEOUT
            BLOCKFLOW_MAX_CONCURRENT_BLOCKS
            BLOCKFLOW_OUTPUT_PREVIEW_CHARS
        """
        defaults = cls()
        return cls(
            block_timeout_s=_env_float("BLOCKFLOW_BLOCK_TIMEOUT", defaults.block_timeout_s),
            run_timeout_s=_env_float("BLOCKFLOW_RUN_TIMEOUT", defaults.run_timeout_s),
            max_concurrent_blocks=_env_int(
                "BLOCKFLOW_MAX_CONCURRENT_BLOCKS", defaults.max_concurrent_blocks
            ),
            output_preview_chars=_env_int(
                "BLOCKFLOW_OUTPUT_PREVIEW_CHARS", defaults.output_preview_chars
            ),
        )


@dataclass
class MongoDBConfig:
    """MongoDB connection configuration for the execution log store.

    Attributes:
        url: MongoDB connection URL
        username: Authentication username
        password: Authentication password
        auth_source: Authentication database name
        database: Target database name (e.g. "blockflow", "blockflow_test")
    """

    url: str = "mongodb://localhost:27017"
    username: str = ""
    password: str = ""
    auth_source: str = "admin"
    database: str = "blockflow"

    def connection_string(self) -> str:
        """Build the effective connection string."""
        return self.url

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MongoDBConfig:
        """Create from a dictionary.

        Keys may use either snake_case (``auth_source``) or
        camelCase (``authSource``).
        """
        return cls(
            url=data.get("url", cls.url),
            username=data.get("username", cls.username),
            password=data.get("password", cls.password),
            auth_source=data.get("auth_source", data.get("authSource", cls.auth_source)),
            database=data.get("database", cls.database),
        )

    @classmethod
    def from_env(cls) -> MongoDBConfig:
        """Create from environment variables.

        Recognised variables (all optional):
            BLOCKFLOW_MONGODB_URL
            BLOCKFLOW_MONGODB_USERNAME
            BLOCKFLOW_MONGODB_PASSWORD
            BLOCKFLOW_MONGODB_AUTH_SOURCE
            BLOCKFLOW_MONGODB_DATABASE
        """
        defaults = cls()
        return cls(
            url=os.environ.get("BLOCKFLOW_MONGODB_URL", defaults.url),
            username=os.environ.get("BLOCKFLOW_MONGODB_USERNAME", defaults.username),
            password=os.environ.get("BLOCKFLOW_MONGODB_PASSWORD", defaults.password),
            auth_source=os.environ.get("BLOCKFLOW_MONGODB_AUTH_SOURCE", defaults.auth_source),
            database=os.environ.get("BLOCKFLOW_MONGODB_DATABASE", defaults.database),
        )


@dataclass
class ServerConfig:
    """HTTP server configuration.

    Attributes:
        host: Bind address
        port: Bind port
        log_store: Execution log backend, "memory" or "mongodb"
    """

    host: str = "127.0.0.1"
    port: int = 8000
    log_store: str = "memory"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServerConfig:
        """Create from a dictionary."""
        return cls(
            host=data.get("host", cls.host),
            port=int(data.get("port", cls.port)),
            log_store=data.get("log_store", data.get("logStore", cls.log_store)),
        )

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Create from environment variables.

        Recognised variables (all optional):
            BLOCKFLOW_SERVER_HOST
            BLOCKFLOW_SERVER_PORT
            BLOCKFLOW_LOG_STORE  ("memory" or "mongodb")
        """
        defaults = cls()
        return cls(
            host=os.environ.get("BLOCKFLOW_SERVER_HOST", defaults.host),
            port=_env_int("BLOCKFLOW_SERVER_PORT", defaults.port),
            log_store=os.environ.get("BLOCKFLOW_LOG_STORE", defaults.log_store),
        )


@dataclass
class BlockflowConfig:
    """Top-level Blockflow configuration.

    Attributes:
        engine: Execution engine settings
        mongodb: MongoDB connection settings
        server: HTTP server settings
    """

    engine: EngineConfig = field(default_factory=EngineConfig)
    mongodb: MongoDBConfig = field(default_factory=MongoDBConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dictionary."""
        return {
            "engine": self.engine.to_dict(),
            "mongodb": self.mongodb.to_dict(),
            "server": self.server.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BlockflowConfig:
        """Create from a dictionary (e.g. parsed JSON)."""
        return cls(
            engine=EngineConfig.from_dict(data.get("engine", {})),
            mongodb=MongoDBConfig.from_dict(data.get("mongodb", {})),
            server=ServerConfig.from_dict(data.get("server", {})),
        )

    @classmethod
    def from_env(cls) -> BlockflowConfig:
        """Create from environment variables."""
        return cls(
            engine=EngineConfig.from_env(),
            mongodb=MongoDBConfig.from_env(),
            server=ServerConfig.from_env(),
        )


# -- Config file loading -----------------------------------------------------

DEFAULT_CONFIG_FILENAME = "blockflow.config.json"

_SEARCH_PATHS = [
    Path.cwd,  # current directory
    lambda: Path.home() / ".blockflow",  # user home
    lambda: Path("/etc/blockflow"),  # system-wide
]


def _find_config_file(filename: str = DEFAULT_CONFIG_FILENAME) -> Path | None:
    """Search well-known locations for a config file.

    Search order:
        1. ``$BLOCKFLOW_CONFIG`` environment variable (explicit path)
        2. Current working directory
        3. ``~/.blockflow/``
        4. ``/etc/blockflow/``

    Returns:
        Path to the first config file found, or ``None``.
    """
    explicit = os.environ.get("BLOCKFLOW_CONFIG")
    if explicit:
        path = Path(explicit)
        if path.is_file():
            return path
        return None

    for path_fn in _SEARCH_PATHS:
        candidate = path_fn() / filename
        if candidate.is_file():
            return candidate
    return None


def load_config(path: str | Path | None = None) -> BlockflowConfig:
    """Load Blockflow configuration.

    Resolution order:
        1. Explicit *path* argument
        2. Config file found via :func:`_find_config_file`
        3. Environment variables (``BLOCKFLOW_*``)
        4. Built-in defaults

    Args:
        path: Optional explicit path to a JSON config file.

    Returns:
        Populated :class:`BlockflowConfig` instance.
    """
    config_path: Path | None = Path(path) if path else _find_config_file()

    if config_path and config_path.is_file():
        data = json.loads(config_path.read_text())
        return BlockflowConfig.from_dict(data)

    return BlockflowConfig.from_env()
