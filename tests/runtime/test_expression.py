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

"""Tests for expression evaluation and template interpolation."""

import pytest

from blockflow.runtime import (
    EvaluationError,
    EvaluationScope,
    ExpressionEvaluator,
    ReferenceResolutionError,
    interpolate,
)
from blockflow.runtime.expression import get_member, resolve_path


@pytest.fixture
def evaluator():
    return ExpressionEvaluator()


@pytest.fixture
def scope():
    outputs = {
        "agent-1": {"response": "hello", "score": 0.9, "tags": ["a", "b"]},
        "check": {"result": False},
    }
    names = {"agent-1": "agent-1", "writer": "agent-1", "check": "check"}
    return EvaluationScope(
        inputs={"topic": "cats", "count": 3},
        outputs=outputs,
        find_block=names.get,
    )


class TestEvaluate:
    """Tests for ExpressionEvaluator.evaluate."""

    def test_literal(self, evaluator, scope):
        assert evaluator.evaluate("42", scope) == 42

    def test_input_reference(self, evaluator, scope):
        assert evaluator.evaluate("input.topic", scope) == "cats"
        assert evaluator.evaluate("input", scope) == {"topic": "cats", "count": 3}

    def test_block_reference_by_name(self, evaluator, scope):
        assert evaluator.evaluate("writer.response", scope) == "hello"

    def test_block_reference_with_backticks(self, evaluator, scope):
        assert evaluator.evaluate("`agent-1`.score", scope) == 0.9

    def test_missing_member_is_null(self, evaluator, scope):
        assert evaluator.evaluate("writer.nothing.deeper", scope) is None
        assert evaluator.evaluate("writer.nothing == null", scope) is True

    def test_unknown_root_raises(self, evaluator, scope):
        with pytest.raises(ReferenceResolutionError):
            evaluator.evaluate("ghost.value", scope)

    def test_sequence_access(self, evaluator, scope):
        assert evaluator.evaluate("writer.tags[1]", scope) == "b"
        assert evaluator.evaluate("writer.tags.length", scope) == 2
        assert evaluator.evaluate("writer.tags[-1]", scope) == "b"
        assert evaluator.evaluate("writer.tags[5]", scope) is None

    def test_arithmetic(self, evaluator, scope):
        assert evaluator.evaluate("input.count * 2 + 1", scope) == 7
        assert evaluator.evaluate("7 % 4", scope) == 3
        assert evaluator.evaluate("-input.count", scope) == -3

    def test_string_concatenation(self, evaluator, scope):
        assert evaluator.evaluate("'topic: ' + input.topic", scope) == "topic: cats"
        assert evaluator.evaluate("'n=' + input.count", scope) == "n=3"

    def test_list_concatenation(self, evaluator, scope):
        assert evaluator.evaluate("[1] + [2]", scope) == [1, 2]

    def test_comparisons(self, evaluator, scope):
        assert evaluator.evaluate("writer.score >= 0.8", scope) is True
        assert evaluator.evaluate("input.topic != 'dogs'", scope) is True

    def test_boolean_short_circuit(self, evaluator, scope):
        # The right side would raise if evaluated
        assert evaluator.evaluate("false && ghost.value", scope) is False
        assert evaluator.evaluate("true || ghost.value", scope) is True

    def test_not(self, evaluator, scope):
        assert evaluator.evaluate("!check.result", scope) is True

    def test_division_by_zero(self, evaluator, scope):
        with pytest.raises(EvaluationError, match="Division by zero"):
            evaluator.evaluate("1 / 0", scope)

    def test_bad_operands(self, evaluator, scope):
        with pytest.raises(EvaluationError):
            evaluator.evaluate("input - 1", scope)

    def test_incomparable_values(self, evaluator, scope):
        with pytest.raises(EvaluationError, match="Cannot compare"):
            evaluator.evaluate("input.topic < 1", scope)

    def test_evaluate_condition_coerces(self, evaluator, scope):
        assert evaluator.evaluate_condition("input.count", scope) is True
        assert evaluator.evaluate_condition("writer.missing", scope) is False


class TestLoopScope:
    def test_loop_variables(self, evaluator, scope):
        scope.loop_iteration = 2
        assert evaluator.evaluate("loop.iteration", scope) == 2
        assert evaluator.evaluate("loop.index", scope) == 1

    def test_loop_outside_loop(self, evaluator, scope):
        with pytest.raises(ReferenceResolutionError, match="inside a loop"):
            evaluator.evaluate("loop.iteration", scope)


class TestInterpolate:
    """Tests for <block.path> template references."""

    def test_single_reference_keeps_type(self, scope):
        assert interpolate("<writer.tags>", scope) == ["a", "b"]
        assert interpolate(" <input.count> ", scope) == 3

    def test_embedded_reference_is_rendered(self, scope):
        assert interpolate("About <input.topic>: <writer.score>", scope) == "About cats: 0.9"

    def test_structures_are_walked(self, scope):
        value = {"q": "<input.topic>", "items": ["<input.count>", 5]}
        assert interpolate(value, scope) == {"q": "cats", "items": [3, 5]}

    def test_unknown_root_left_untouched(self, scope):
        assert interpolate("a <b> c", scope) == "a <b> c"
        assert interpolate("<html>", scope) == "<html>"

    def test_missing_path_renders_empty(self, scope):
        assert interpolate("x<writer.nope>y", scope) == "xy"

    def test_non_string_values_pass_through(self, scope):
        assert interpolate(7, scope) == 7


class TestMembers:
    def test_get_member_on_none(self):
        assert get_member(None, "x") is None

    def test_string_length(self):
        assert get_member("abc", "length") == 3

    def test_numeric_string_index(self):
        assert get_member(["x", "y"], "1") == "y"

    def test_resolve_path(self):
        assert resolve_path({"a": {"b": [1, 2]}}, ["a", "b", "0"]) == 1
