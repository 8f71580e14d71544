"""Tests for graph and legacy flow normalisation."""

from nurture.contracts import NodeKind
from nurture.graph import branch_rank, normalize_condition_config, normalize_flow, normalize_graph
from nurture.persistence.models import Workflow


def _workflow(graph):
    return Workflow(id="wf", user_id="u", settings={"workflow_graph": graph})


def test_branch_rank_orders_condition_handles():
    handles = ["", "else", "else_if_2", "if", "else_if_1", "no", "yes"]
    ordered = sorted(handles, key=branch_rank)
    assert ordered[:2] == ["if", "yes"]
    assert ordered[2:4] == ["else_if_1", "else_if_2"]
    assert ordered[4:6] == ["else", "no"]
    assert ordered[-1] == ""


def test_normalize_graph_without_nodes_uses_legacy():
    assert normalize_graph(Workflow(id="wf", user_id="u")) is None
    assert normalize_graph(_workflow({"nodes": [], "edges": []})) is None


def test_normalize_graph_without_trigger_uses_legacy():
    graph = {"nodes": [{"id": "w", "kind": "wait"}], "edges": []}
    assert normalize_graph(_workflow(graph)) is None


def test_normalize_graph_assigns_ids_and_drops_dangling_edges():
    graph = {
        "nodes": [
            {"kind": "trigger"},
            {"id": "send", "kind": "send_email"},
            {"id": "send", "kind": "wait"},
            {"id": "odd", "kind": "sms"},
        ],
        "edges": [
            {"source": "node_1", "target": "send"},
            {"source": "send", "target": "missing"},
            {"source": "send", "target": "odd"},
        ],
    }
    result = normalize_graph(_workflow(graph))

    assert result is not None
    assert result.trigger.id == "node_1"
    assert [n.id for n in result.nodes] == ["node_1", "send", "odd"]
    assert result.node_by_id("send").kind is NodeKind.SEND_EMAIL
    odd = result.node_by_id("odd")
    assert odd.kind is NodeKind.UNSUPPORTED
    assert odd.raw_kind == "sms"
    assert [e.target for e in result.outgoing("send")] == ["odd"]
    assert result.entry == "send"


def test_condition_edges_are_sorted_and_yes_no_normalised():
    graph = {
        "nodes": [
            {"id": "t", "kind": "trigger"},
            {"id": "c", "kind": "condition", "config": {"rule": "tag_exists", "value": "vip"}},
            {"id": "a", "kind": "exit"},
            {"id": "b", "kind": "exit"},
        ],
        "edges": [
            {"source": "t", "target": "c"},
            {"source": "c", "target": "b", "sourceHandle": "no"},
            {"source": "c", "target": "a", "sourceHandle": "yes"},
        ],
    }
    result = normalize_graph(_workflow(graph))

    handles = [e.source_handle for e in result.outgoing("c")]
    assert handles == ["if", "else"]
    assert result.select_edge("c", "if").target == "a"
    assert result.select_edge("c", "else").target == "b"
    # An unmatched else-if falls back to the else edge.
    assert result.select_edge("c", "else_if_3").target == "b"


def test_a_b_handles_are_normalised_to_if_else():
    graph = {
        "nodes": [
            {"id": "t", "kind": "trigger"},
            {"id": "c", "kind": "condition", "config": {"rule": "tag_exists", "value": "vip"}},
            {"id": "left", "kind": "exit"},
            {"id": "right", "kind": "exit"},
        ],
        "edges": [
            {"source": "t", "target": "c"},
            {"source": "c", "target": "right", "sourceHandle": "b"},
            {"source": "c", "target": "left", "sourceHandle": "a"},
        ],
    }
    result = normalize_graph(_workflow(graph))

    assert [e.source_handle for e in result.outgoing("c")] == ["if", "else"]
    assert result.select_edge("c", "else").target == "right"
    assert result.select_edge("c", "else_if_1").target == "right"


def test_select_edge_defaults_to_first_edge():
    graph = {
        "nodes": [
            {"id": "t", "kind": "trigger"},
            {"id": "c", "kind": "condition"},
            {"id": "x", "kind": "exit"},
        ],
        "edges": [{"source": "t", "target": "c"}, {"source": "c", "target": "x", "sourceHandle": "if"}],
    }
    result = normalize_graph(_workflow(graph))
    assert result.select_edge("c", "else").target == "x"
    assert result.select_edge("x", "if") is None


def test_condition_config_without_clauses_is_single_if():
    clauses = normalize_condition_config({"rule": "USER_PROPERTY", "propertyKey": "plan", "value": "pro"})
    assert len(clauses) == 1
    assert clauses[0].handle == "if"
    assert clauses[0].rule == "user_property"
    assert clauses[0].property_key == "plan"
    assert clauses[0].comparator == "exists"


def test_condition_config_defaults_to_email_opened():
    assert normalize_condition_config(None)[0].rule == "email_opened"


def test_condition_clause_handles_are_reassigned():
    clauses = normalize_condition_config(
        {
            "clauses": [
                {"id": "whatever", "rule": "tag_exists", "value": "a"},
                {"id": "else_if_2", "rule": "tag_exists", "value": "b"},
                {"id": "else_if_2", "rule": "tag_exists", "value": "c"},
                {"id": "garbage", "rule": "tag_exists", "value": "d"},
            ]
        }
    )
    assert [c.handle for c in clauses] == ["if", "else_if_2", "else_if_1", "else_if_3"]


def test_normalize_flow_patches_stop_and_unknown_types():
    steps = normalize_flow([{"type": "send_email"}, {"type": "teleport", "config": {"duration": 5}}])
    assert [s.type for s in steps] == ["send_email", "wait", "stop"]
    assert steps[0].id == "step_1"
    assert steps[1].name == "Step 2"
    assert steps[-1].id == "auto_stop"


def test_normalize_flow_keeps_explicit_stop():
    steps = normalize_flow([{"id": "s", "type": "stop"}])
    assert [s.id for s in steps] == ["s"]
    assert [s.type for s in normalize_flow("not a list")] == ["stop"]
