"""
Tests for FlowExecutor traversal.

Covers chain values, condition routing, parallel fan-out, diamonds, cycles
and failure halting.
"""

import pytest

from appflow.errors import EngineFault, FlowCycleError
from appflow.graph.context import ExecutionContext
from appflow.graph.executor import FlowExecutor
from appflow.runtime.event_bus import EventBus, EventType
from appflow.schemas.app import FlowNode


def _flow(*nodes: dict) -> list[FlowNode]:
    return [FlowNode.model_validate(n) for n in nodes]


def score_flow() -> list[FlowNode]:
    return _flow(
        {"id": "start", "type": "start", "outputs": ["route"]},
        {
            "id": "route",
            "type": "condition",
            "inputs": ["start"],
            "conditions": [
                {"field": "input.score", "operator": ">", "value": 3, "next_node": "agentA"},
                {"field": "input.score", "operator": "<", "value": 4, "next_node": "agentB"},
            ],
        },
        {
            "id": "agentA",
            "type": "agent",
            "inputs": ["route"],
            "config": {"agent_id": "A", "prompt": "high {{input.score}}"},
        },
        {
            "id": "agentB",
            "type": "agent",
            "inputs": ["route"],
            "config": {"agent_id": "B", "prompt": "low {{input.score}}"},
        },
    )


class TestLinearAndRouting:
    @pytest.mark.asyncio
    async def test_single_chain_returns_last_output(self, agents):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["t"]},
            {
                "id": "t",
                "type": "transform",
                "inputs": ["start"],
                "outputs": ["a"],
                "config": {"input": "input.items", "transform_type": "aggregate", "operation": "sum"},
            },
            {
                "id": "a",
                "type": "agent",
                "inputs": ["t"],
                "config": {"agent_id": "summer", "prompt": "Total is {{node.t}}"},
            },
        )
        ctx = ExecutionContext(input={"items": [1, 2, 3]})

        output = await FlowExecutor(agent_executor=agents).run_flow(flow, ctx)

        assert output["response"] == "summer: Total is 6"
        assert ctx.execution_path == ["start", "t", "a"]
        assert ctx.node_results["t"] == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize("score,agent", [(5, "A"), (2, "B")])
    async def test_condition_routes_to_one_branch(self, agents, score, agent):
        ctx = ExecutionContext(input={"score": score})

        output = await FlowExecutor(agent_executor=agents).run_flow(score_flow(), ctx)

        assert [call[0] for call in agents.calls] == [agent]
        assert output["response"].startswith(f"{agent}: ")
        assert ctx.execution_path == ["start", "route", f"agent{agent}"]

    @pytest.mark.asyncio
    async def test_sibling_chains_return_list(self, agents):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["a", "b"]},
            {"id": "a", "type": "agent", "inputs": ["start"], "config": {"agent_id": "a"}},
            {"id": "b", "type": "agent", "inputs": ["start"], "config": {"agent_id": "b"}},
        )

        output = await FlowExecutor(agent_executor=agents).run_flow(flow, ExecutionContext())

        assert [o["response"] for o in output] == ["a: ", "b: "]

    @pytest.mark.asyncio
    async def test_start_node_is_first_without_inputs(self, agents):
        flow = _flow(
            {"id": "later", "type": "agent", "inputs": ["entry"], "config": {"agent_id": "x"}},
            {"id": "entry", "type": "transform", "outputs": ["later"],
             "config": {"transform_type": "format", "format": "string"}},
        )

        ctx = ExecutionContext(input="hi")
        await FlowExecutor(agent_executor=agents).run_flow(flow, ctx)

        assert ctx.execution_path == ["entry", "later"]

    @pytest.mark.asyncio
    async def test_flow_without_start_node_is_engine_fault(self):
        flow = _flow({"id": "a", "type": "agent", "inputs": ["a"]})

        with pytest.raises(EngineFault):
            await FlowExecutor().run_flow(flow, ExecutionContext())


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_connector_halts_branch(self, connectors, agents):
        connectors.responses["crm"] = {"success": False, "error": "timeout upstream"}
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["c"]},
            {
                "id": "c",
                "type": "connector",
                "inputs": ["start"],
                "outputs": ["after"],
                "config": {"connector_id": "crm"},
            },
            {"id": "after", "type": "agent", "inputs": ["c"], "config": {"agent_id": "x"}},
        )
        ctx = ExecutionContext()

        output = await FlowExecutor(
            agent_executor=agents, connector_executor=connectors
        ).run_flow(flow, ctx)

        assert output == {"node_id": "c", "success": False, "error": "timeout upstream"}
        assert agents.calls == []
        assert ctx.node_errors == {"c": "timeout upstream"}
        assert "c" not in ctx.node_results
        assert ctx.execution_path == ["start", "c"]


class TestParallelFanOut:
    @pytest.mark.asyncio
    async def test_one_failing_branch_does_not_short_circuit(self, connectors):
        connectors.responses["broken"] = {"success": False, "error": "503"}
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["fan"]},
            {"id": "fan", "type": "parallel", "inputs": ["start"], "outputs": ["c1", "c2", "c3"]},
            {"id": "c1", "type": "connector", "inputs": ["fan"], "config": {"connector_id": "ok1"}},
            {"id": "c2", "type": "connector", "inputs": ["fan"],
             "config": {"connector_id": "broken"}},
            {"id": "c3", "type": "connector", "inputs": ["fan"], "config": {"connector_id": "ok3"}},
        )
        ctx = ExecutionContext()

        output = await FlowExecutor(connector_executor=connectors).run_flow(flow, ctx)

        assert len(output) == 3
        assert output[1] == {"node_id": "c2", "success": False, "error": "503"}
        assert output[0] == {"echo": {}}
        assert ctx.node_results["fan"] == output
        assert set(ctx.node_results) == {"start", "fan", "c1", "c3"}
        assert ctx.node_errors == {"c2": "503"}
        assert ctx.execution_path[:2] == ["start", "fan"]
        assert sorted(ctx.execution_path[2:]) == ["c1", "c2", "c3"]

    @pytest.mark.asyncio
    async def test_branches_read_earlier_results(self, agents):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["fan"]},
            {"id": "fan", "type": "parallel", "inputs": ["start"], "outputs": ["a", "b"]},
            {"id": "a", "type": "agent", "inputs": ["fan"],
             "config": {"agent_id": "a", "prompt": "{{node.start.topic}}"}},
            {"id": "b", "type": "agent", "inputs": ["fan"],
             "config": {"agent_id": "b", "prompt": "{{node.start.topic}}!"}},
        )

        output = await FlowExecutor(agent_executor=agents).run_flow(
            flow, ExecutionContext(input={"topic": "owls"})
        )

        assert [o["response"] for o in output] == ["a: owls", "b: owls!"]

    @pytest.mark.asyncio
    async def test_branch_outputs_recorded_individually(self):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["fan"]},
            {"id": "fan", "type": "parallel", "inputs": ["start"], "outputs": ["x", "y"],
             },
            {"id": "x", "type": "transform", "inputs": ["fan"],
             "config": {"input": "input.x", "transform_type": "format", "format": "number"}},
            {"id": "y", "type": "transform", "inputs": ["fan"],
             "config": {"input": "input.y", "transform_type": "format", "format": "number"}},
        )
        ctx = ExecutionContext(input={"x": "1", "y": "2.5"})

        output = await FlowExecutor().run_flow(flow, ctx)

        assert output == [1, 2.5]
        assert ctx.node_results["x"] == 1
        assert ctx.node_results["y"] == 2.5


def _number(node_id: str, path: str, outputs: list[str]) -> dict:
    return {
        "id": node_id,
        "type": "transform",
        "outputs": outputs,
        "config": {"input": path, "transform_type": "format", "format": "number"},
    }


class TestMergeJoins:
    @pytest.mark.asyncio
    async def test_diamond_merge_runs_once_with_both_inputs(self):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["a", "b"]},
            {**_number("a", "input.x", ["m"]), "inputs": ["start"]},
            {**_number("b", "input.y", ["m"]), "inputs": ["start"]},
            {"id": "m", "type": "merge", "inputs": ["a", "b"],
             "config": {"merge_strategy": "concat"}},
        )
        ctx = ExecutionContext(input={"x": 1, "y": 2})

        output = await FlowExecutor().run_flow(flow, ctx)

        assert ctx.execution_path == ["start", "a", "b", "m"]
        assert ctx.node_results["m"] == [1, 2]
        assert output == [[1, 2], [1, 2]]

    @pytest.mark.asyncio
    async def test_merge_after_condition_fan_out(self):
        flow = _flow(
            {"id": "s", "type": "start", "outputs": ["c"]},
            {
                "id": "c",
                "type": "condition",
                "inputs": ["s"],
                "conditions": [
                    {"field": "input.x", "operator": "exists", "next_node": "a"},
                    {"field": "input.y", "operator": "exists", "next_node": "b"},
                ],
            },
            {**_number("a", "input.x", ["m"]), "inputs": ["c"]},
            {**_number("b", "input.y", ["m"]), "inputs": ["c"]},
            {"id": "m", "type": "merge", "inputs": ["a", "b"],
             "config": {"merge_strategy": "concat"}},
        )
        ctx = ExecutionContext(input={"x": 1, "y": 2})

        await FlowExecutor().run_flow(flow, ctx)

        assert ctx.node_results["m"] == [1, 2]
        assert ctx.execution_path == ["s", "c", "a", "b", "m"]

    @pytest.mark.asyncio
    async def test_merge_after_untaken_branch_uses_available_inputs(self):
        flow = _flow(
            {"id": "s", "type": "start", "outputs": ["c"]},
            {
                "id": "c",
                "type": "condition",
                "inputs": ["s"],
                "conditions": [
                    {"field": "input.x", "operator": "exists", "next_node": "a"},
                    {"field": "input.y", "operator": "exists", "next_node": "b"},
                ],
            },
            {**_number("a", "input.x", ["m"]), "inputs": ["c"]},
            {**_number("b", "input.y", ["m"]), "inputs": ["c"]},
            {"id": "m", "type": "merge", "inputs": ["a", "b"],
             "config": {"merge_strategy": "concat"}},
        )
        ctx = ExecutionContext(input={"x": 1})

        output = await FlowExecutor().run_flow(flow, ctx)

        assert output == [1]
        assert ctx.execution_path == ["s", "c", "a", "m"]

    @pytest.mark.asyncio
    async def test_merge_runs_last_when_awaited_input_never_arrives(self):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["a", "gate"]},
            {**_number("a", "input.x", ["m"]), "inputs": ["start"]},
            {
                "id": "gate",
                "type": "condition",
                "inputs": ["start"],
                "conditions": [{"field": "input.go", "operator": "exists", "next_node": "b"}],
            },
            {**_number("b", "input.y", ["m"]), "inputs": ["gate"]},
            {"id": "m", "type": "merge", "inputs": ["a", "b"],
             "config": {"merge_strategy": "concat"}},
        )
        ctx = ExecutionContext(input={"x": 1, "y": 2})

        output = await FlowExecutor().run_flow(flow, ctx)

        assert ctx.execution_path == ["start", "a", "gate", "m"]
        assert ctx.node_results["m"] == [1]
        assert output == [[1], {"matched": []}]

    @pytest.mark.asyncio
    async def test_merge_after_parallel_fan_out_runs_on_parent(self):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["fan"]},
            {"id": "fan", "type": "parallel", "inputs": ["start"], "outputs": ["x", "y"]},
            {**_number("x", "input.x", ["m"]), "inputs": ["fan"]},
            {**_number("y", "input.y", ["m"]), "inputs": ["fan"]},
            {"id": "m", "type": "merge", "inputs": ["x", "y"], "outputs": ["total"],
             "config": {"merge_strategy": "concat"}},
            {"id": "total", "type": "transform", "inputs": ["m"],
             "config": {"input": "node.m", "transform_type": "aggregate", "operation": "sum"}},
        )
        ctx = ExecutionContext(input={"x": "1", "y": "2.5"})

        output = await FlowExecutor().run_flow(flow, ctx)

        assert ctx.node_results["m"] == [1, 2.5]
        assert ctx.execution_path.count("m") == 1
        assert ctx.execution_path[-2:] == ["m", "total"]
        assert output == [3.5, 3.5]


class TestGraphShapes:
    @pytest.mark.asyncio
    async def test_cycle_raises_flow_cycle_error(self, agents):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["a"]},
            {"id": "a", "type": "agent", "inputs": ["start", "b"], "outputs": ["b"],
             "config": {"agent_id": "a"}},
            {"id": "b", "type": "agent", "inputs": ["a"], "outputs": ["a"],
             "config": {"agent_id": "b"}},
        )

        with pytest.raises(FlowCycleError) as exc_info:
            await FlowExecutor(agent_executor=agents).run_flow(flow, ExecutionContext())

        assert exc_info.value.node_id == "a"
        assert exc_info.value.path == ["start", "a", "b"]

    @pytest.mark.asyncio
    async def test_cycle_through_parallel_branch_is_detected(self):
        flow = _flow(
            {"id": "start", "type": "start", "outputs": ["fan"]},
            {"id": "fan", "type": "parallel", "inputs": ["start", "loop"], "outputs": ["loop"]},
            {"id": "loop", "type": "condition", "inputs": ["fan"], "outputs": ["fan"]},
        )

        with pytest.raises(FlowCycleError):
            await FlowExecutor().run_flow(flow, ExecutionContext())

    @pytest.mark.asyncio
    async def test_deep_chain_does_not_recurse(self):
        depth = 2000
        nodes = [{"id": "n0", "type": "start", "outputs": ["n1"]}]
        for i in range(1, depth):
            nodes.append(
                {
                    "id": f"n{i}",
                    "type": "condition",
                    "inputs": [f"n{i - 1}"],
                    "outputs": [f"n{i + 1}"] if i < depth - 1 else [],
                }
            )
        ctx = ExecutionContext()

        output = await FlowExecutor().run_flow(_flow(*nodes), ctx)

        assert output == {"matched": []}
        assert len(ctx.execution_path) == depth


class TestNodeEvents:
    @pytest.mark.asyncio
    async def test_node_events_published(self, agents):
        bus = EventBus()
        ctx = ExecutionContext(input={"score": 9})

        await FlowExecutor(agent_executor=agents, event_bus=bus).run_flow(score_flow(), ctx)

        started = bus.get_history(event_type=EventType.NODE_STARTED)
        completed = bus.get_history(event_type=EventType.NODE_COMPLETED)
        assert [e.node_id for e in reversed(started)] == ["start", "route", "agentA"]
        assert len(completed) == 3
