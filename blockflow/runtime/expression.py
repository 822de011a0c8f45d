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

"""Blockflow expression evaluation.

Evaluates condition-language ASTs including:
- Literals (string, number, boolean, null, arrays)
- Runtime input references (input.field)
- Loop references (loop.iteration, loop.index)
- Block output references (blockName.field, `block-id`["field"])
- Arithmetic, comparisons and boolean operators

Also interpolates ``<block.path>`` references inside text config values.
"""

import json
import logging
import operator
import re
from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .condition import parse_condition
from .errors import EvaluationError, ReferenceResolutionError

logger = logging.getLogger(__name__)

INPUT_ROOT = "input"
LOOP_ROOT = "loop"

# <name> or <name.path.to.value>; no whitespace inside the brackets
_TEMPLATE_REF = re.compile(r"<([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)>")

_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
}

_COMPARISON: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass
class EvaluationScope:
    """Values visible to an expression.

    Provides access to:
    - Runtime inputs of the run
    - Latest outputs of blocks, keyed by block id
    - The current loop iteration, when evaluating inside a loop
    """

    # Caller-supplied trigger payload
    inputs: Mapping[str, Any] = field(default_factory=dict)

    # Block id -> latest output
    outputs: Mapping[str, Any] = field(default_factory=dict)

    # Maps a block id or normalized name to a block id; None if unknown
    find_block: Callable[[str], str | None] | None = None

    # 1-based iteration of the enclosing loop
    loop_iteration: int | None = None

    def resolve_root(self, name: str) -> Any:
        """Resolve the first segment of a reference.

        Raises:
            ReferenceResolutionError: If the name is not an input, loop or block
        """
        if name == INPUT_ROOT:
            return self.inputs
        if name == LOOP_ROOT:
            if self.loop_iteration is None:
                raise ReferenceResolutionError(name, "'loop' is only available inside a loop")
            return {"iteration": self.loop_iteration, "index": self.loop_iteration - 1}
        block_id = self.find_block(name) if self.find_block else None
        if block_id is None:
            raise ReferenceResolutionError(name, f"Unknown block or input '{name}'")
        return self.outputs.get(block_id)


def get_member(value: Any, key: Any) -> Any:
    """Access a property or element, returning None when it is absent."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        if isinstance(key, Hashable) and key in value:
            return value[key]
        return value.get(str(key))
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        if key == "length":
            return len(value)
        if isinstance(key, bool):
            return None
        if isinstance(key, int) or (isinstance(key, str) and key.lstrip("-").isdigit()):
            position = int(key)
            if -len(value) <= position < len(value):
                return value[position]
        return None
    if isinstance(value, str):
        if key == "length":
            return len(value)
        if isinstance(key, int) and not isinstance(key, bool) and -len(value) <= key < len(value):
            return value[key]
    return None


def resolve_path(root: Any, path: Sequence[str]) -> Any:
    """Walk a dotted path from a root value."""
    value = root
    for segment in path:
        value = get_member(value, segment)
        if value is None:
            return None
    return value


class ExpressionEvaluator:
    """Evaluates condition-language expressions."""

    def evaluate(self, expr: Any, scope: EvaluationScope) -> Any:
        """Evaluate an expression.

        Args:
            expr: The expression AST, or expression source text
            scope: Values visible to the expression

        Returns:
            The evaluated value

        Raises:
            ConditionSyntaxError: If source text does not parse
            EvaluationError: If evaluation fails
            ReferenceResolutionError: If a reference cannot be resolved
        """
        if isinstance(expr, str):
            expr = parse_condition(expr)
        return self._eval(expr, scope)

    def evaluate_condition(self, expr: Any, scope: EvaluationScope) -> bool:
        """Evaluate an expression and coerce the result to a boolean."""
        return bool(self.evaluate(expr, scope))

    def _eval(self, expr: dict[str, Any], scope: EvaluationScope) -> Any:
        expr_type = expr.get("type", "")

        if expr_type == "Literal":
            return expr.get("value")
        elif expr_type == "Name":
            return scope.resolve_root(expr["name"])
        elif expr_type == "Attr":
            return get_member(self._eval(expr["object"], scope), expr["attr"])
        elif expr_type == "Index":
            obj = self._eval(expr["object"], scope)
            return get_member(obj, self._eval(expr["index"], scope))
        elif expr_type == "Array":
            return [self._eval(item, scope) for item in expr["items"]]
        elif expr_type == "Neg":
            return self._eval_neg(expr, scope)
        elif expr_type == "Binary":
            return self._eval_binary(expr, scope)
        elif expr_type == "Compare":
            return self._eval_compare(expr, scope)
        elif expr_type == "Not":
            return not self._eval(expr["operand"], scope)
        elif expr_type == "And":
            left = self._eval(expr["left"], scope)
            return self._eval(expr["right"], scope) if left else left
        elif expr_type == "Or":
            left = self._eval(expr["left"], scope)
            return left if left else self._eval(expr["right"], scope)
        else:
            raise EvaluationError(str(expr), f"Unknown expression type: {expr_type}")

    def _eval_neg(self, expr: dict, scope: EvaluationScope) -> Any:
        value = self._eval(expr["operand"], scope)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise EvaluationError(_describe(expr), f"Cannot negate {type(value).__name__}")
        return -value

    def _eval_binary(self, expr: dict, scope: EvaluationScope) -> Any:
        """Evaluate an arithmetic expression.

        ``+`` concatenates when either side is a string.
        """
        op = expr["op"]
        left = self._eval(expr["left"], scope)
        right = self._eval(expr["right"], scope)

        if op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return f"{_stringify(left)}{_stringify(right)}"
        if op == "+" and isinstance(left, list) and isinstance(right, list):
            return left + right

        if not _is_number(left) or not _is_number(right):
            raise EvaluationError(
                _describe(expr),
                f"Unsupported operand types for {op}: "
                f"{type(left).__name__} and {type(right).__name__}",
            )
        try:
            return _ARITHMETIC[op](left, right)
        except ZeroDivisionError as e:
            raise EvaluationError(_describe(expr), "Division by zero") from e

    def _eval_compare(self, expr: dict, scope: EvaluationScope) -> bool:
        op = expr["op"]
        left = self._eval(expr["left"], scope)
        right = self._eval(expr["right"], scope)
        try:
            return bool(_COMPARISON[op](left, right))
        except TypeError as e:
            raise EvaluationError(
                _describe(expr),
                f"Cannot compare {type(left).__name__} and {type(right).__name__} with {op}",
            ) from e


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _describe(expr: dict) -> str:
    return json.dumps(expr, default=str)


# =========================================================================
# Template interpolation
# =========================================================================


def interpolate(value: Any, scope: EvaluationScope) -> Any:
    """Resolve ``<block.path>`` references inside a config value.

    Strings consisting of exactly one reference are replaced by the raw
    referenced value; references embedded in longer text are rendered as
    strings. Dicts and lists are walked recursively. References whose root
    is not an input, loop or block are left untouched.

    Args:
        value: A config value
        scope: Values visible to the references

    Returns:
        The value with references resolved
    """
    if isinstance(value, str):
        return _interpolate_string(value, scope)
    if isinstance(value, Mapping):
        return {key: interpolate(item, scope) for key, item in value.items()}
    if isinstance(value, list):
        return [interpolate(item, scope) for item in value]
    return value


def _lookup_template(reference: str, scope: EvaluationScope) -> tuple[bool, Any]:
    root, *path = reference.split(".")
    try:
        base = scope.resolve_root(root)
    except ReferenceResolutionError:
        logger.debug("Template reference left unresolved: reference=%s", reference)
        return False, None
    return True, resolve_path(base, path)


def _interpolate_string(text: str, scope: EvaluationScope) -> Any:
    whole = _TEMPLATE_REF.fullmatch(text.strip())
    if whole:
        found, resolved = _lookup_template(whole.group(1), scope)
        return resolved if found else text

    def replace(match: re.Match) -> str:
        found, resolved = _lookup_template(match.group(1), scope)
        return _stringify(resolved) if found else match.group(0)

    return _TEMPLATE_REF.sub(replace, text)
