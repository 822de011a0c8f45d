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

"""Entry point: python -m blockflow.server"""

from __future__ import annotations

import argparse
import logging
import os

import uvicorn

from ..config import load_config


def main() -> None:  # pragma: no cover
    parser = argparse.ArgumentParser(description="Blockflow execution server")
    parser.add_argument("--host", default=None, help="Bind address (default: from config)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: from config)")
    parser.add_argument("--config", default=None, help="Path to Blockflow config file")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        metavar="FILE",
        help="Log to file instead of stderr",
    )
    args = parser.parse_args()

    log_handlers: list[logging.Handler] = []
    if args.log_file:
        log_handlers.append(logging.FileHandler(args.log_file))
    else:
        log_handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=log_handlers,
    )

    # The app factory reads the config path back from the environment
    if args.config:
        os.environ["BLOCKFLOW_CONFIG"] = args.config
    server = load_config(args.config).server

    uvicorn.run(
        "blockflow.server.app:create_app",
        factory=True,
        host=args.host or server.host,
        port=args.port or server.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
