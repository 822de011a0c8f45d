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

"""Condition language parser using Lark.

Loop exit conditions and expression-valued config fields share one small
language::

    agent1.response.score >= 0.8 && loop.iteration < 3
    not input.dryRun or check["status"] == "done"

Expressions parse to plain dict ASTs evaluated by
:class:`~blockflow.runtime.expression.ExpressionEvaluator`.
"""

import ast
from functools import lru_cache
from typing import Any

from lark import Lark, Transformer, v_args
from lark.exceptions import UnexpectedCharacters, UnexpectedInput, UnexpectedToken, VisitError

from .errors import ConditionSyntaxError

CONDITION_GRAMMAR = r"""
?start: expr

?expr: or_expr

?or_expr: and_expr
        | or_expr ("or" | "||") and_expr        -> or_op

?and_expr: not_expr
         | and_expr ("and" | "&&") not_expr     -> and_op

?not_expr: comparison
         | ("not" | "!") not_expr               -> not_op

?comparison: sum
           | sum COMP_OP sum                    -> compare

?sum: product
    | sum PLUS product                          -> binary
    | sum MINUS product                         -> binary

?product: unary
        | product STAR unary                    -> binary
        | product SLASH unary                   -> binary
        | product PERCENT unary                 -> binary

?unary: primary
      | MINUS unary                             -> neg

?primary: atom
        | primary "." IDENT                     -> attr
        | primary "[" expr "]"                  -> index

?atom: NUMBER                                   -> number
     | STRING                                   -> string
     | "true"                                   -> const_true
     | "false"                                  -> const_false
     | "null"                                   -> const_null
     | IDENT                                    -> name
     | QUOTED_NAME                              -> quoted_name
     | "[" "]"                                  -> empty_array
     | "[" expr ("," expr)* "]"                 -> array
     | "(" expr ")"

COMP_OP: /==|!=|<=|>=|<|>/
PLUS: "+"
MINUS: "-"
STAR: "*"
SLASH: "/"
PERCENT: "%"

IDENT: /[A-Za-z_][A-Za-z0-9_]*/
QUOTED_NAME: /`[^`]+`/
NUMBER: /\d+(\.\d+)?([eE][+-]?\d+)?/
STRING: /"(?:[^"\\]|\\.)*"/ | /'(?:[^'\\]|\\.)*'/

%import common.WS
%ignore WS
"""


@v_args(inline=True)
class ConditionTransformer(Transformer):
    """Transforms a Lark parse tree into a dict AST."""

    def number(self, token):
        text = str(token)
        if "." in text or "e" in text or "E" in text:
            return {"type": "Literal", "value": float(text)}
        return {"type": "Literal", "value": int(text)}

    def string(self, token):
        return {"type": "Literal", "value": ast.literal_eval(str(token))}

    def const_true(self):
        return {"type": "Literal", "value": True}

    def const_false(self):
        return {"type": "Literal", "value": False}

    def const_null(self):
        return {"type": "Literal", "value": None}

    def name(self, token):
        return {"type": "Name", "name": str(token)}

    def quoted_name(self, token):
        return {"type": "Name", "name": str(token)[1:-1]}

    def empty_array(self):
        return {"type": "Array", "items": []}

    def array(self, *items):
        return {"type": "Array", "items": list(items)}

    def attr(self, obj, token):
        return {"type": "Attr", "object": obj, "attr": str(token)}

    def index(self, obj, key):
        return {"type": "Index", "object": obj, "index": key}

    def neg(self, _op, operand):
        return {"type": "Neg", "operand": operand}

    def binary(self, left, op, right):
        return {"type": "Binary", "op": str(op), "left": left, "right": right}

    def compare(self, left, op, right):
        return {"type": "Compare", "op": str(op), "left": left, "right": right}

    def not_op(self, operand):
        return {"type": "Not", "operand": operand}

    def and_op(self, left, right):
        return {"type": "And", "left": left, "right": right}

    def or_op(self, left, right):
        return {"type": "Or", "left": left, "right": right}


class ConditionParser:
    """Condition language parser.

    The Lark instance is shared across all ConditionParser instances
    since the grammar is immutable at runtime.
    """

    _lark: Lark | None = None

    @classmethod
    def _get_lark(cls) -> Lark:
        """Return the shared Lark parser, creating it on first use."""
        if cls._lark is None:
            cls._lark = Lark(CONDITION_GRAMMAR, parser="lalr")
        return cls._lark

    def __init__(self) -> None:
        self._parser = self._get_lark()
        self._transformer = ConditionTransformer()

    def parse(self, source: str) -> dict[str, Any]:
        """Parse an expression and return its AST.

        Args:
            source: Expression text

        Returns:
            Dict AST

        Raises:
            ConditionSyntaxError: If the expression contains syntax errors
        """
        try:
            tree = self._parser.parse(source)
            return self._transformer.transform(tree)
        except UnexpectedCharacters as e:
            raise ConditionSyntaxError(
                source,
                f"Unexpected character '{e.char}'",
                line=e.line,
                column=e.column,
            ) from e
        except UnexpectedToken as e:
            expected = ", ".join(sorted(e.expected)) if e.expected else "unknown"
            if e.token.type == "$END":
                message = f"Unexpected end of expression. Expected one of: {expected}"
                raise ConditionSyntaxError(source, message) from e
            raise ConditionSyntaxError(
                source,
                f"Unexpected token '{e.token}'. Expected one of: {expected}",
                line=e.line,
                column=e.column,
            ) from e
        except UnexpectedInput as e:
            raise ConditionSyntaxError(
                source,
                "Syntax error",
                line=getattr(e, "line", None),
                column=getattr(e, "column", None),
            ) from e
        except VisitError as e:
            raise ConditionSyntaxError(source, f"Invalid literal: {e.orig_exc}") from e


@lru_cache(maxsize=512)
def parse_condition(source: str) -> dict[str, Any]:
    """Parse an expression with the shared parser, caching the AST.

    The returned AST is shared between callers and must not be mutated.

    Raises:
        ConditionSyntaxError: If the expression contains syntax errors
    """
    return ConditionParser().parse(source)
