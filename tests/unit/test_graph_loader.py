"""Tests for sopwalk.graph: node variants, validation, loading and serialisation."""

from __future__ import annotations

import copy
import json
import logging

import pytest
import yaml

from sopwalk.exceptions import GraphValidationError, UnknownNodeError
from sopwalk.graph.loader import (
    bundled_procedures,
    dump_procedure,
    load_bundled,
    load_procedure,
    load_procedure_file,
    parse_param,
)
from sopwalk.graph.nodes import (
    ActionNode,
    DecisionNode,
    EndNode,
    NodeKind,
    ParamKind,
    ProcedureGraph,
    ToolRef,
    canonical_result_key,
)
from tests.fakes import LATE_ORDER_DOC


def _doc(**nodes):
    return {"name": "t", "startNode": "a", "nodes": nodes}


class TestResultKeys:
    @pytest.mark.parametrize(
        ("tool", "key"),
        [
            ("getOrderStatus", "orderStatus"),
            ("getUserDetails", "userDetails"),
            ("cancelOrder", "cancelResult"),
            ("refundOrder", "refundResult"),
            ("lookup", "lookupResult"),
            ("get", "getResult"),
            ("get_user", "user"),
        ],
    )
    def test_canonical_result_key(self, tool, key):
        """Test result keys derived from tool names."""
        assert canonical_result_key(tool) == key

    def test_tool_ref_defaults_result_key(self):
        """Test ToolRef fills in the canonical key."""
        assert ToolRef("getOrderStatus").result_key == "orderStatus"
        assert ToolRef("getOrderStatus", result_key="status").result_key == "status"

    def test_tool_ref_requires_name(self):
        """Test an empty tool name is rejected."""
        with pytest.raises(ValueError):
            ToolRef("")


class TestParseParam:
    def test_braced_reference(self):
        """Test {context.x} is a whole-value reference."""
        param = parse_param("orderId", "{context.orderId}")
        assert param.kind is ParamKind.REFERENCE
        assert param.value == "orderId"
        assert param.context_paths == ("orderId",)

    def test_bare_reference(self):
        """Test context.x without braces is also a reference."""
        param = parse_param("amount", "context.orderStatus.totalAmount")
        assert param.kind is ParamKind.REFERENCE
        assert param.value == "orderStatus.totalAmount"

    def test_literals(self):
        """Test plain values are literals."""
        assert parse_param("reason", "Late delivery").kind is ParamKind.LITERAL
        assert parse_param("amount", 42.5).kind is ParamKind.LITERAL
        assert parse_param("flag", None).kind is ParamKind.LITERAL

    def test_template(self):
        """Test embedded placeholders make a template."""
        param = parse_param("note", "Order {context.orderId} for {context.userId}")
        assert param.kind is ParamKind.TEMPLATE
        assert param.context_paths == ("orderId", "userId")

    @pytest.mark.parametrize("raw", ["context.order id", "{context.}", "see {context.}"])
    def test_malformed(self, raw):
        """Test malformed references are rejected."""
        with pytest.raises(ValueError):
            parse_param("p", raw)


class TestValidation:
    def test_valid_minimal(self):
        """Test a minimal graph loads."""
        graph = load_procedure(_doc(a={"type": "end"}))
        assert graph.start == "a"
        assert isinstance(graph.node("a"), EndNode)

    def test_late_order_graph(self, late_order_graph):
        """Test the shared fixture graph shape."""
        start = late_order_graph.node("start")
        check = late_order_graph.node("check")
        assert isinstance(start, ActionNode)
        assert start.tool is not None and start.tool.result_key == "orderStatus"
        assert isinstance(check, DecisionNode)
        assert (check.on_true, check.on_false) == ("late", "onTime")

    def test_collects_every_problem(self):
        """Test all problems are reported together."""
        doc = _doc(
            a={"type": "action", "condition": "context.x > 1", "nextNodes": ["b", "c"]},
            b={"type": "decision", "condition": "context.x >", "nextNodes": ["a"]},
            c={"type": "end", "nextNodes": ["a"]},
            d={"type": "teleport"},
            e={"type": "decision", "condition": "context.x > 1", "nextNodes": ["a"]},
            f={"type": "action", "nextNodes": ["ghost"]},
        )
        with pytest.raises(GraphValidationError) as exc_info:
            load_procedure(doc)
        errors = exc_info.value.errors
        text = "\n".join(errors)
        assert "may not declare a condition" in text
        assert "invalid condition" in text
        assert "end node 'c' may not have successors" in text
        assert "unknown type 'teleport'" in text
        assert "decision node 'e' has 1 successors" in text
        assert "unknown node 'ghost'" in text
        assert len(errors) >= 6
        assert exc_info.value.procedure == "t"

    def test_missing_start(self):
        """Test an undefined start node is rejected."""
        with pytest.raises(GraphValidationError, match="start node 'a' is not defined"):
            load_procedure(_doc(b={"type": "end"}))

    def test_empty_graph(self):
        """Test a graph without nodes is rejected."""
        with pytest.raises(GraphValidationError, match="no nodes"):
            load_procedure(_doc())

    def test_id_key_mismatch(self):
        """Test node ids must match their keys."""
        with pytest.raises(GraphValidationError, match="does not match its id"):
            load_procedure(_doc(a={"id": "b", "type": "end"}))

    def test_decision_rejects_tool_and_template(self):
        """Test decisions may not carry tools or templates."""
        doc = _doc(
            a={
                "type": "decision",
                "condition": "context.x > 1",
                "tool": "getX",
                "messageTemplate": "hi",
                "nextNodes": ["b", "b"],
            },
            b={"type": "end"},
        )
        with pytest.raises(GraphValidationError) as exc_info:
            load_procedure(doc)
        assert len(exc_info.value.errors) == 2

    def test_params_without_tool(self):
        """Test toolParams need a tool."""
        doc = _doc(a={"type": "action", "toolParams": {"x": 1}})
        with pytest.raises(GraphValidationError, match="without a tool"):
            load_procedure(doc)

    def test_unknown_field_rejected(self):
        """Test unrecognised document fields are schema errors."""
        doc = _doc(a={"type": "end", "colour": "blue"})
        with pytest.raises(GraphValidationError, match="colour"):
            load_procedure(doc)

    def test_missing_required_field(self):
        """Test a document without startNode is rejected."""
        with pytest.raises(GraphValidationError, match="startNode"):
            load_procedure({"name": "t", "nodes": {}})

    def test_unreachable_nodes_warn(self, caplog):
        """Test orphan nodes load with a warning."""
        doc = _doc(a={"type": "end"}, orphan={"type": "end"})
        with caplog.at_level(logging.WARNING, logger="sopwalk.graph.loader"):
            graph = load_procedure(doc)
        assert graph.unreachable() == ["orphan"]
        assert "unreachable" in caplog.text

    def test_graph_constructor_validates(self):
        """Test ProcedureGraph itself rejects unsound node sets."""
        with pytest.raises(GraphValidationError, match="duplicate node id"):
            ProcedureGraph("t", "a", [EndNode("a"), EndNode("a")])
        with pytest.raises(GraphValidationError, match="at most 1"):
            ProcedureGraph("t", "a", [ActionNode("a", next=("b", "b")), EndNode("b")])

    def test_error_message_summarises(self):
        """Test the exception message carries a short summary."""
        err = GraphValidationError("p", ["one", "two", "three", "four", "five"])
        assert "5 problems" in str(err)
        assert "(2 more)" in str(err)
        assert err.error_code == "graph_validation_error"


class TestGraphQueries:
    def test_unknown_node(self, order_delay_graph):
        """Test lookups of undefined ids raise."""
        with pytest.raises(UnknownNodeError):
            order_delay_graph.node("nope")
        assert "nope" not in order_delay_graph
        assert "greeting" in order_delay_graph

    def test_describe(self, order_delay_graph):
        """Test the summary counts."""
        summary = order_delay_graph.describe()
        assert summary["nodes"] == 12
        assert summary["by_kind"] == {"action": 9, "decision": 2, "end": 1}
        assert summary["tools"] == ["cancelOrder", "getOrderStatus", "getUserDetails", "refundOrder"]
        assert summary["unreachable"] == []

    def test_lookahead_includes_decision_branches(self, order_delay_graph):
        """Test lookahead sees through the next decision."""
        assert order_delay_graph.lookahead("greeting") == ["check_order_status"]
        assert order_delay_graph.lookahead("check_order_status") == [
            "evaluate_delay",
            "offer_cancellation",
            "provide_status",
        ]
        assert order_delay_graph.lookahead("end_conversation") == []

    def test_referenced_keys(self, order_delay_graph):
        """Test keys read by templates, parameters and conditions."""
        assert order_delay_graph.referenced_keys("check_order_status") == ("orderId",)
        assert order_delay_graph.referenced_keys("evaluate_delay") == ("orderStatus",)
        assert order_delay_graph.referenced_keys("confirm_cancellation") == ("cancelResult", "refundResult")
        assert order_delay_graph.referenced_keys("process_refund") == ("orderId", "orderStatus")

    def test_reachable_from(self, order_delay_graph):
        """Test breadth-first reachability."""
        reach = order_delay_graph.reachable_from("customer_decision")
        assert reach[0] == "customer_decision"
        assert set(reach) == {
            "customer_decision",
            "cancel_order",
            "continue_with_order",
            "process_refund",
            "end_conversation",
            "confirm_cancellation",
        }

    def test_node_kinds(self, order_delay_graph):
        """Test node kinds are exposed as class attributes."""
        kinds = {node.id: node.kind for node in order_delay_graph}
        assert kinds["evaluate_delay"] is NodeKind.DECISION
        assert kinds["end_conversation"] is NodeKind.END
        assert kinds["greeting"] is NodeKind.ACTION


class TestFiles:
    def test_bundled_names(self):
        """Test bundled procedures are discoverable."""
        assert bundled_procedures() == ["order-delay", "order-delay-extended"]

    def test_bundled_extended(self, extended_graph):
        """Test the YAML procedure loads fully connected."""
        assert extended_graph.start == "greeting"
        assert len(extended_graph) == 27
        assert extended_graph.unreachable() == []
        refund = extended_graph.node("determine_refund_type")
        assert refund.condition.context_keys == ("isPremiumMember", "orderStatus")

    def test_unknown_bundled(self):
        """Test a missing bundled name raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_bundled("does-not-exist")

    def test_json_file(self, tmp_path):
        """Test loading a JSON document from disk."""
        path = tmp_path / "late.json"
        path.write_text(json.dumps(LATE_ORDER_DOC), encoding="utf-8")
        graph = load_procedure_file(path)
        assert graph.name == "late-order"
        assert graph.ids == ("start", "check", "late", "onTime")

    def test_yaml_file(self, tmp_path):
        """Test loading a YAML document from disk."""
        path = tmp_path / "late.yaml"
        path.write_text(yaml.safe_dump(LATE_ORDER_DOC), encoding="utf-8")
        assert load_procedure_file(path).name == "late-order"

    def test_non_object_document(self, tmp_path):
        """Test a document whose root is not an object."""
        path = tmp_path / "bad.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        with pytest.raises(GraphValidationError, match="root must be an object"):
            load_procedure_file(path)


class TestSerialisation:
    def test_dump_uses_document_names(self, order_delay_graph):
        """Test dumps use camelCase keys and omit derived result keys."""
        doc = dump_procedure(order_delay_graph)
        assert doc["startNode"] == "get_user_details"
        node = doc["nodes"]["check_order_status"]
        assert node["toolParams"] == {"orderId": "{context.orderId}"}
        assert node["nextNodes"] == ["evaluate_delay"]
        assert "resultKey" not in node
        assert doc["nodes"]["end_conversation"].get("nextNodes") is None

    def test_dump_reloads_equivalent(self, extended_graph):
        """Test a dumped document loads back into the same graph."""
        reloaded = load_procedure(copy.deepcopy(dump_procedure(extended_graph)))
        assert reloaded.ids == extended_graph.ids
        assert reloaded.describe() == extended_graph.describe()
        for node in extended_graph:
            assert reloaded.node(node.id) == node

    def test_custom_result_key_kept(self):
        """Test explicit result keys survive a dump."""
        doc = _doc(
            a={"type": "action", "tool": "getOrderStatus", "resultKey": "status", "nextNodes": ["b"]},
            b={"type": "end"},
        )
        assert dump_procedure(load_procedure(doc))["nodes"]["a"]["resultKey"] == "status"

    def test_explicit_empty_values_kept(self):
        """Test empty params, empty successors and condition text survive a dump."""
        doc = _doc(
            a={"type": "action", "tool": "ping", "toolParams": {}, "nextNodes": ["d"]},
            d={"type": "decision", "condition": " context.ok == true ", "nextNodes": ["b", "c"]},
            b={"type": "action", "messageTemplate": "", "nextNodes": []},
            c={"id": "c", "type": "end", "description": "", "nextNodes": []},
        )
        dumped = dump_procedure(load_procedure(copy.deepcopy(doc)))["nodes"]
        assert dumped["a"]["toolParams"] == {}
        assert dumped["d"]["condition"] == " context.ok == true "
        assert dumped["b"] == {"type": "action", "messageTemplate": "", "nextNodes": []}
        assert dumped["c"] == doc["nodes"]["c"]

    def test_omitted_fields_stay_omitted(self):
        """Test a dump adds no fields the document left out."""
        doc = _doc(a={"type": "action", "tool": "ping", "nextNodes": ["b"]}, b={"type": "end"})
        assert dump_procedure(load_procedure(copy.deepcopy(doc)))["nodes"] == doc["nodes"]
