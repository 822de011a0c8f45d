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

"""Tests for the workflow graph model."""

import pytest

from blockflow.runtime import GraphFormatError, WorkflowGraph
from blockflow.runtime.graph import DEFAULT_MAX_ITERATIONS
from tests.workflow_helpers import block, document, edge, make_graph, starter


class TestFromDict:
    """Tests for parsing serialized workflow documents."""

    def test_blocks_keep_document_order(self):
        graph = make_graph([starter(), block("b"), block("a")])
        assert list(graph.blocks) == ["start", "b", "a"]

    def test_blocks_as_list(self):
        graph = WorkflowGraph.from_dict({"blocks": [block("a"), block("b")], "edges": []})
        assert set(graph.blocks) == {"a", "b"}

    def test_state_wrapper_is_unwrapped(self):
        graph = WorkflowGraph.from_dict({"state": document([block("a")])})
        assert "a" in graph.blocks

    def test_sub_block_values_become_config(self):
        raw = {
            "id": "n1",
            "type": "notion",
            "subBlocks": {
                "operation": {"id": "operation", "type": "dropdown", "value": "read_notion"},
                "pageId": {"id": "pageId", "value": "abc"},
            },
        }
        graph = WorkflowGraph.from_dict({"blocks": {"n1": raw}})
        assert graph.blocks["n1"].config == {"operation": "read_notion", "pageId": "abc"}
        assert graph.blocks["n1"].operation == "read_notion"

    def test_explicit_config_wins_over_sub_blocks(self):
        raw = {
            "id": "a",
            "type": "agent",
            "subBlocks": {"model": {"value": "small"}},
            "config": {"model": "large"},
        }
        graph = WorkflowGraph.from_dict({"blocks": {"a": raw}})
        assert graph.blocks["a"].config["model"] == "large"

    def test_edge_aliases(self):
        doc = document([block("a"), block("b")])
        doc["edges"] = [{"sourceBlockId": "a", "targetBlockId": "b"}]
        graph = WorkflowGraph.from_dict(doc)
        (parsed,) = graph.edges
        assert (parsed.source, parsed.target) == ("a", "b")
        assert parsed.id == "edge-0"
        assert parsed.source_handle == "source"
        assert parsed.target_handle == "target"

    def test_loop_aliases_and_defaults(self):
        loops = {"l1": {"memberBlockIds": ["a"], "exitCondition": "a.done"}}
        graph = make_graph([block("a")], loops=loops)
        loop = graph.loops["l1"]
        assert loop.members == ("a",)
        assert loop.max_iterations == DEFAULT_MAX_ITERATIONS
        assert loop.exit_condition == "a.done"

    def test_loop_max_iterations_from_string(self):
        graph = make_graph([block("a")], loops={"l1": {"nodes": ["a"], "maxIterations": "3"}})
        assert graph.loops["l1"].max_iterations == 3

    def test_disabled_block(self):
        graph = make_graph([block("a", enabled=False)])
        assert graph.blocks["a"].enabled is False

    def test_round_trip_shape(self):
        graph = make_graph([starter(), block("a")], [edge("start", "a")])
        again = WorkflowGraph.from_dict(graph.to_dict())
        assert list(again.blocks) == list(graph.blocks)
        assert again.edges == graph.edges


class TestMalformedDocuments:
    """Tests for GraphFormatError."""

    def test_not_an_object(self):
        with pytest.raises(GraphFormatError):
            WorkflowGraph.from_dict(["nope"])

    def test_duplicate_block_ids(self):
        with pytest.raises(GraphFormatError, match="duplicate"):
            WorkflowGraph.from_dict({"blocks": [block("a"), block("a")]})

    def test_key_must_match_id(self):
        with pytest.raises(GraphFormatError, match="does not match"):
            WorkflowGraph.from_dict({"blocks": {"x": block("a")}})

    def test_block_without_type(self):
        with pytest.raises(GraphFormatError, match="no type"):
            WorkflowGraph.from_dict({"blocks": {"a": {"id": "a"}}})

    def test_edge_without_target(self):
        with pytest.raises(GraphFormatError, match="source and a target"):
            WorkflowGraph.from_dict({"blocks": {}, "edges": [{"source": "a"}]})

    def test_bad_max_iterations(self):
        with pytest.raises(GraphFormatError, match="maxIterations"):
            make_graph([block("a")], loops={"l1": {"nodes": ["a"], "maxIterations": "many"}})


class TestIndexes:
    """Tests for derived lookups."""

    @pytest.fixture
    def graph(self):
        return make_graph(
            [starter(), block("a", name="My Agent"), block("b"), block("c")],
            [edge("start", "a"), edge("start", "b"), edge("a", "c"), edge("b", "c"), edge("a", "c", edge_id="dup")],
            loops={"l1": {"nodes": ["b", "c"]}},
        )

    def test_inbound_and_outbound(self, graph):
        assert [e.source for e in graph.inbound_edges("c")] == ["a", "b", "a"]
        assert [e.target for e in graph.outbound_edges("start")] == ["a", "b"]

    def test_predecessors_are_distinct(self, graph):
        assert graph.predecessors("c") == ["a", "b"]

    def test_loop_membership(self, graph):
        assert graph.loop_of("b") == "l1"
        assert graph.loop_of("a") is None
        internal = [e for e in graph.edges if graph.is_internal(e)]
        assert [(e.source, e.target) for e in internal] == [("b", "c")]

    def test_find_block_by_id_or_normalized_name(self, graph):
        assert graph.find_block("a").id == "a"
        assert graph.find_block("myagent").id == "a"
        assert graph.find_block("MY AGENT").id == "a"
        assert graph.find_block("missing") is None

    def test_terminal_blocks(self, graph):
        assert [b.id for b in graph.terminal_blocks()] == ["c"]

    def test_display_name_falls_back_to_id(self):
        graph = WorkflowGraph.from_dict({"blocks": {"x": {"id": "x", "type": "agent"}}})
        assert graph.blocks["x"].display_name == "x"
