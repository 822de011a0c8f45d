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

"""Blockflow command-line interface."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from . import integrations
from .config import load_config
from .runtime.capabilities import CapabilityRegistry, ModuleCapabilityLoader
from .runtime.errors import MissingSecretError, ValidationError
from .runtime.graph import WorkflowGraph
from .runtime.scheduler import ExecutionScheduler
from .runtime.secrets import EnvSecretStore, resolve_secrets
from .runtime.validator import validate

_SUBCOMMANDS = {"run", "validate"}


def _build_run_parser(parser: argparse.ArgumentParser) -> None:
    """Add run-specific arguments to *parser*."""
    parser.add_argument("workflow", help="Workflow JSON file")

    parser.add_argument(
        "--inputs",
        metavar="FILE",
        help="JSON file with runtime inputs ('-' reads stdin)",
    )

    parser.add_argument(
        "--secret",
        action="append",
        dest="secrets",
        metavar="NAME=VALUE",
        help="Secret value available to {{NAME}} references (repeatable)",
    )

    parser.add_argument(
        "--secret-env",
        action="append",
        dest="secret_envs",
        metavar="NAME",
        help="Read secret NAME from the environment variable of the same name (repeatable)",
    )

    parser.add_argument(
        "--capabilities",
        action="append",
        dest="capability_hooks",
        metavar="URI",
        help="Capability registration hook, module:function or file:///path.py:function "
        "(repeatable)",
    )

    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Whole-run timeout in seconds",
    )

    parser.add_argument(
        "--block-timeout",
        type=float,
        default=None,
        help="Per-block timeout in seconds",
    )

    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=None,
        help="Maximum number of simultaneous block invocations (0 = unlimited)",
    )

    parser.add_argument(
        "-o",
        "--output",
        help="Output file for the result JSON (writes to stdout if not provided)",
    )

    parser.add_argument(
        "--compact",
        action="store_true",
        help="Output compact JSON (no indentation)",
    )


def _build_validate_parser(parser: argparse.ArgumentParser) -> None:
    """Add validate-specific arguments to *parser*."""
    parser.add_argument("workflow", help="Workflow JSON file")


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add arguments shared by all subcommands."""
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="Path to Blockflow config file (JSON). "
        "Defaults to blockflow.config.json in cwd, ~/.blockflow/, or /etc/blockflow/",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: WARNING)",
    )

    parser.add_argument(
        "--log-file",
        default=None,
        metavar="FILE",
        help="Log to file instead of stderr",
    )


def _configure_logging(parsed: argparse.Namespace) -> None:
    """Set up logging from parsed CLI args."""
    log_handlers: list[logging.Handler] = []
    if parsed.log_file:
        log_handlers.append(logging.FileHandler(parsed.log_file))
    else:
        log_handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=getattr(logging, parsed.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        handlers=log_handlers,
    )


def _read_json(path: str) -> Any:
    """Read a JSON document from a file, or from stdin for ``-``."""
    if path == "-":
        return json.loads(sys.stdin.read())
    return json.loads(Path(path).read_text())


def _load_workflow(path: str) -> WorkflowGraph | None:
    """Load and parse a workflow file, reporting problems on stderr."""
    try:
        return WorkflowGraph.from_dict(_read_json(path))
    except FileNotFoundError:
        print(f"Error: File not found: {path}", file=sys.stderr)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in {path}: {e}", file=sys.stderr)
    except OSError as e:
        print(f"Error reading {path}: {e}", file=sys.stderr)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
    return None


def _parse_secrets(parsed: argparse.Namespace) -> dict[str, str] | None:
    """Collect --secret and --secret-env values."""
    secrets: dict[str, str] = {}
    for item in parsed.secrets or []:
        if "=" not in item:
            print(f"Error: Invalid secret '{item}'. Expected format: NAME=VALUE", file=sys.stderr)
            return None
        name, value = item.split("=", 1)
        secrets[name] = value

    names = parsed.secret_envs or []
    try:
        secrets.update(resolve_secrets(EnvSecretStore(), {name: name for name in names}))
    except MissingSecretError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None
    return secrets


# =========================================================================
# Run handler
# =========================================================================


def _handle_run(parsed: argparse.Namespace) -> int:
    """Execute the run subcommand."""
    config = load_config(parsed.config)
    engine = config.engine
    if parsed.timeout is not None:
        engine.run_timeout_s = parsed.timeout
    if parsed.block_timeout is not None:
        engine.block_timeout_s = parsed.block_timeout
    if parsed.max_concurrent is not None:
        engine.max_concurrent_blocks = parsed.max_concurrent

    graph = _load_workflow(parsed.workflow)
    if graph is None:
        return 1

    runtime_inputs: dict[str, Any] = {}
    if parsed.inputs:
        try:
            runtime_inputs = _read_json(parsed.inputs)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error reading inputs: {e}", file=sys.stderr)
            return 1
        if not isinstance(runtime_inputs, dict):
            print("Error: Inputs must be a JSON object", file=sys.stderr)
            return 1

    secrets = _parse_secrets(parsed)
    if secrets is None:
        return 1

    capabilities = CapabilityRegistry.with_builtins()
    integrations.register(capabilities)
    loader = ModuleCapabilityLoader(capabilities)
    for uri in parsed.capability_hooks or []:
        try:
            loader.load(uri)
        except (ImportError, AttributeError, TypeError) as e:
            print(f"Error loading capabilities from {uri}: {e}", file=sys.stderr)
            return 1

    scheduler = ExecutionScheduler(capabilities, config=engine)
    result = scheduler.execute(graph, runtime_inputs, secrets)

    indent = None if parsed.compact else 2
    output = json.dumps(result.to_dict(), indent=indent, default=str)
    try:
        if parsed.output:
            Path(parsed.output).write_text(output + "\n")
        else:
            print(output)
    except OSError as e:
        print(f"Error writing output: {e}", file=sys.stderr)
        return 1

    if not result.success:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1
    return 0


# =========================================================================
# Validate handler
# =========================================================================


def _handle_validate(parsed: argparse.Namespace) -> int:
    """Execute the validate subcommand."""
    graph = _load_workflow(parsed.workflow)
    if graph is None:
        return 1

    try:
        validated = validate(graph)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(
        f"OK: {len(graph.blocks)} block(s), {len(graph.edges)} edge(s), "
        f"{len(graph.loops)} loop(s); order: {', '.join(validated.order)}",
        file=sys.stderr,
    )
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Blockflow CLI.

    Supports subcommands ``run`` and ``validate``.

    Args:
        args: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    argv = args if args is not None else sys.argv[1:]

    if not argv or argv[0] not in _SUBCOMMANDS:
        print(
            f"Usage: blockflow {{{','.join(sorted(_SUBCOMMANDS))}}} ...",
            file=sys.stderr,
        )
        return 2

    subcommand, remaining = argv[0], list(argv[1:])
    parser = argparse.ArgumentParser(prog=f"blockflow {subcommand}")
    if subcommand == "run":
        parser.description = "Execute a workflow graph"
        _build_run_parser(parser)
    else:
        parser.description = "Validate a workflow graph without executing it"
        _build_validate_parser(parser)
    _add_common_args(parser)
    parsed = parser.parse_args(remaining)
    _configure_logging(parsed)

    if subcommand == "run":
        return _handle_run(parsed)
    return _handle_validate(parsed)


if __name__ == "__main__":
    sys.exit(main())
