"""Tests for flow validation."""

import pytest

from appflow.errors import FlowValidationError
from appflow.graph.validator import FlowValidator, parse_flow, validate_flow
from appflow.schemas.app import FlowNode, NodeType


def _node(node_id, node_type="agent", inputs=None, outputs=None, **kwargs):
    return FlowNode(
        id=node_id,
        type=node_type,
        inputs=inputs or [],
        outputs=outputs or [],
        **kwargs,
    )


class TestFlowValidator:
    def test_valid_linear_flow(self):
        flow = [
            _node("start", "start", outputs=["a"]),
            _node("a", inputs=["start"]),
        ]

        result = FlowValidator().validate(flow)

        assert result.success is True
        assert result.errors == []

    def test_node_without_inputs_counts_as_start(self):
        flow = [_node("only")]

        assert FlowValidator().validate(flow).success is True

    def test_missing_start_node(self):
        flow = [
            _node("a", inputs=["b"], outputs=["b"]),
            _node("b", inputs=["a"]),
        ]

        result = FlowValidator().validate(flow)

        assert result.success is False
        assert any("start node" in e for e in result.errors)

    def test_empty_flow_is_invalid(self):
        result = FlowValidator().validate([])

        assert result.success is False
        assert "at least one node" in result.error

    def test_reports_every_violation(self):
        """Duplicate id and two dangling outputs are all reported in one pass."""
        flow = [
            _node("start", "start", outputs=["ghost", "a"]),
            _node("a", inputs=["start"], outputs=["phantom"]),
            _node("a", inputs=["start"]),
        ]

        result = FlowValidator().validate(flow)

        assert result.success is False
        assert len(result.violations) == 3
        assert "Node 'a': duplicate node id" in result.errors
        assert "Node 'start': output references unknown node 'ghost'" in result.errors
        assert "Node 'a': output references unknown node 'phantom'" in result.errors

    def test_unknown_input_and_condition_target(self):
        flow = [
            _node("start", "start", outputs=["check"]),
            _node(
                "check",
                "condition",
                inputs=["start", "nowhere"],
                conditions=[{"field": "input.x", "operator": "exists", "next_node": "missing"}],
            ),
        ]

        result = FlowValidator().validate(flow)

        assert result.success is False
        assert any("input references unknown node 'nowhere'" in e for e in result.errors)
        assert any("routes to unknown node 'missing'" in e for e in result.errors)

    def test_cycle_is_reported(self):
        flow = [
            _node("start", "start", outputs=["a"]),
            _node("a", inputs=["start", "b"], outputs=["b"]),
            _node("b", inputs=["a"], outputs=["a"]),
        ]

        result = FlowValidator().validate(flow)

        assert result.success is False
        assert any("creates a cycle" in e for e in result.errors)

    def test_diamond_is_not_a_cycle(self):
        flow = [
            _node("start", "start", outputs=["a", "b"]),
            _node("a", inputs=["start"], outputs=["m"]),
            _node("b", inputs=["start"], outputs=["m"]),
            _node("m", "merge", inputs=["a", "b"]),
        ]

        assert FlowValidator().validate(flow).success is True

    def test_cycle_through_condition_target_is_reported(self):
        route = _node(
            "route",
            "condition",
            inputs=["start", "retry"],
            outputs=["retry"],
            conditions=[
                {"field": "input.ok", "operator": "exists", "next_node": "done"},
                {"field": "input.ok", "operator": "==", "value": False, "next_node": "retry"},
            ],
        )
        flow = [
            _node("start", "start", outputs=["route"]),
            route,
            _node("retry", inputs=["route"], outputs=["route"]),
            _node("done", inputs=["route"]),
        ]

        result = FlowValidator().validate(flow)

        assert route.successor_ids == ["retry", "done"]
        assert result.errors == ["Node 'retry': edge to 'route' creates a cycle"]

    def test_raise_for_errors(self):
        result = FlowValidator().validate([_node("a", inputs=["a"])])

        with pytest.raises(FlowValidationError) as exc_info:
            result.raise_for_errors()

        assert exc_info.value.errors == result.errors
        assert str(exc_info.value).startswith("Invalid flow definition: ")


class TestParseFlow:
    def test_parses_dicts(self):
        nodes = parse_flow(
            [
                {"id": "start", "type": "start", "outputs": ["a"]},
                {"id": "a", "type": "transform", "inputs": ["start"]},
            ]
        )

        assert [n.id for n in nodes] == ["start", "a"]
        assert nodes[1].type == NodeType.TRANSFORM

    def test_parse_errors_become_violations(self):
        with pytest.raises(FlowValidationError) as exc_info:
            parse_flow([{"id": "x", "type": "teleport"}, {"type": "agent"}])

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert errors[0].startswith("Node 'x':")
        assert "node #1 field 'id'" in errors[1]

    def test_non_list_rejected(self):
        with pytest.raises(FlowValidationError):
            parse_flow({"id": "start"})

    def test_validate_flow_combines_parse_and_structure(self):
        with pytest.raises(FlowValidationError) as exc_info:
            validate_flow([{"id": "a", "type": "agent", "inputs": ["b"]}])

        assert any("input references unknown node 'b'" in e for e in exc_info.value.errors)
