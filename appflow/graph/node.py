"""
Node handlers - one per NodeType.

Every handler honours the same contract:

    result = await handler.run(node, context)

``run`` always returns a NodeResult. It measures the duration, converts any
exception into ``NodeResult(success=False)`` and, for nodes that call out to
a collaborator (agent, connector, memory), applies the per-node timeout and
retries with exponential backoff. Handlers read the context but never write
node results; the executor records successful outputs.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from appflow.config import EngineConfig
from appflow.errors import EngineFault, NodeExecutionError
from appflow.graph.conditions import as_number, evaluate_condition, loose_equals
from appflow.graph.context import UNDEFINED, ContextResolver, ExecutionContext, to_text
from appflow.graph.topology import find_joins
from appflow.observability import get_trace_context
from appflow.schemas.app import FlowNode, NodeType
from appflow.services.collaborators import AgentExecutor, ConnectorExecutor, MemoryStore

if TYPE_CHECKING:
    from appflow.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

# Traverses one branch of a parallel node and returns its chain value
BranchRunner = Callable[[str, ExecutionContext], Awaitable[Any]]


@dataclass(frozen=True)
class PendingJoin:
    """Stands in for the chain value of a merge node that has not run yet."""

    node_id: str


class ChainValues(list):
    """Chain values of a node with several successors; may hold PendingJoin markers."""


def settle(value: Any, joined: Mapping[str, Any]) -> Any:
    """
    Replace PendingJoin markers with the chain values in ``joined``.

    Markers with no entry stay in place and the surrounding ChainValues is
    kept so a later settle can finish the job. Fully settled chains come
    back as plain lists.
    """
    if isinstance(value, PendingJoin):
        if value.node_id in joined:
            return settle(joined[value.node_id], joined)
        return value
    if isinstance(value, ChainValues):
        items = [settle(item, joined) for item in value]
        if any(isinstance(item, (PendingJoin, ChainValues)) for item in items):
            return ChainValues(items)
        return items
    return value


@dataclass
class NodeResult:
    """Outcome of running one node."""

    success: bool
    output: Any = None
    error: str | None = None
    duration_ms: int = 0
    next_nodes: list[str] = field(default_factory=list)
    attempts: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "next_nodes": self.next_nodes,
        }


class NodeHandler:
    """Base class for node handlers."""

    node_type: ClassVar[NodeType]

    # Handlers that call a collaborator get timeout + retry
    io_bound: ClassVar[bool] = False

    def __init__(
        self,
        resolver: ContextResolver | None = None,
        config: EngineConfig | None = None,
        event_bus: "EventBus | None" = None,
    ):
        self.resolver = resolver or ContextResolver()
        self.config = config or EngineConfig()
        self.event_bus = event_bus

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        raise NotImplementedError

    async def run(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        start = time.perf_counter()
        if self.io_bound:
            result = await self._run_with_retries(node, context)
        else:
            result = await self._attempt(node, context)
        result.duration_ms = int((time.perf_counter() - start) * 1000)
        return result

    async def _attempt(
        self,
        node: FlowNode,
        context: ExecutionContext,
        timeout: float | None = None,
    ) -> NodeResult:
        try:
            if timeout:
                return await asyncio.wait_for(self.execute(node, context), timeout=timeout)
            return await self.execute(node, context)
        except TimeoutError:
            return NodeResult(success=False, error=f"Node '{node.id}' timed out after {timeout}s")
        except EngineFault:
            raise
        except Exception as e:
            logger.debug(f"Node '{node.id}' raised {type(e).__name__}: {e}")
            return NodeResult(success=False, error=str(e) or type(e).__name__)

    async def _run_with_retries(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        timeout = (
            node.timeout_seconds
            if node.timeout_seconds is not None
            else self.config.node_timeout_seconds
        )
        max_retries = (
            node.max_retries if node.max_retries is not None else self.config.node_max_retries
        )
        max_retries = max(0, max_retries)

        attempt = 0
        while True:
            attempt += 1
            result = await self._attempt(node, context, timeout=timeout)
            result.attempts = attempt
            if result.success or attempt > max_retries:
                if not result.success and max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded for node {node.id}")
                return result

            # Backoff: base * 2^(retry - 1) -> 1s, 2s, 4s... with the default base
            delay = self.config.retry_backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                f"Node {node.id} failed ({result.error}); "
                f"retry {attempt}/{max_retries} in {delay}s"
            )
            if self.event_bus:
                trace = get_trace_context()
                await self.event_bus.emit_node_retry(
                    app_id=trace.get("app_id", ""),
                    execution_id=trace.get("execution_id"),
                    node_id=node.id,
                    retry_count=attempt,
                    max_retries=max_retries,
                    error=result.error or "",
                )
            await asyncio.sleep(delay)


class StartHandler(NodeHandler):
    """Passes the execution input through unchanged."""

    node_type = NodeType.START

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        return NodeResult(success=True, output=context.input, next_nodes=list(node.outputs))


class AgentHandler(NodeHandler):
    """Renders the prompt template and invokes an agent."""

    node_type = NodeType.AGENT
    io_bound = True

    def __init__(self, agent_executor: AgentExecutor | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.agent_executor = agent_executor

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        if self.agent_executor is None:
            raise NodeExecutionError(node.id, "No agent executor configured")
        agent_id = node.config.get("agent_id")
        if not agent_id:
            raise NodeExecutionError(node.id, "Agent node requires config.agent_id")

        prompt = self.resolver.render(node.config.get("prompt", ""), context)
        logger.info(f"Invoking agent {agent_id}")
        response = await self.agent_executor.invoke(agent_id, prompt)
        return NodeResult(success=True, output=response, next_nodes=list(node.outputs))


class ConnectorHandler(NodeHandler):
    """
    Calls a connector with resolved parameters.

    A call the connector reports as failed halts the branch.
    """

    node_type = NodeType.CONNECTOR
    io_bound = True

    def __init__(self, connector_executor: ConnectorExecutor | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.connector_executor = connector_executor

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        if self.connector_executor is None:
            raise NodeExecutionError(node.id, "No connector executor configured")
        connector_id = node.config.get("connector_id")
        if not connector_id:
            raise NodeExecutionError(node.id, "Connector node requires config.connector_id")

        endpoint = node.config.get("endpoint", "")
        params = self.resolver.resolve_value(node.config.get("parameters") or {}, context)

        response = await self.connector_executor.execute(connector_id, endpoint, params)
        if not isinstance(response, dict) or not response.get("success"):
            error = response.get("error") if isinstance(response, dict) else None
            return NodeResult(
                success=False,
                error=error or f"Connector '{connector_id}' call failed",
                next_nodes=[],
            )
        return NodeResult(
            success=True,
            output=response.get("data"),
            next_nodes=list(node.outputs),
        )


class ConditionHandler(NodeHandler):
    """Routes to the next_node of every condition that holds."""

    node_type = NodeType.CONDITION

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        if not node.conditions:
            return NodeResult(success=True, output={"matched": []}, next_nodes=list(node.outputs))

        matched: list[str] = []
        for condition in node.conditions:
            if not evaluate_condition(condition, context, self.resolver):
                continue
            if condition.next_node and condition.next_node not in matched:
                matched.append(condition.next_node)

        logger.debug(f"Condition node {node.id} matched {matched}")
        return NodeResult(success=True, output={"matched": matched}, next_nodes=matched)


class ParallelHandler(NodeHandler):
    """
    Runs every output branch concurrently and waits for all of them.

    Each branch gets its own context snapshot; a failing branch contributes a
    failure value instead of cancelling its siblings. Merge nodes fed by more
    than one branch are held back inside the branches and run once, on the
    parent context, after every branch has finished.
    """

    node_type = NodeType.PARALLEL

    def __init__(
        self,
        run_branch: BranchRunner | None = None,
        graph: Mapping[str, FlowNode] | None = None,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.run_branch = run_branch
        self.graph = graph or {}

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        if self.run_branch is None:
            raise NodeExecutionError(node.id, "Parallel node has no branch runner")
        if not node.outputs:
            return NodeResult(success=True, output=[], next_nodes=[])

        # Joins an enclosing parallel node already holds are left to it
        joins = [j for j in find_joins(node.outputs, self.graph) if j not in context.held_joins]
        branch_contexts = []
        for _ in node.outputs:
            branch_ctx = context.snapshot()
            branch_ctx.held_joins.update(joins)
            branch_contexts.append(branch_ctx)
        logger.info(f"Fan-out: executing {len(node.outputs)} branches in parallel")

        results = await asyncio.gather(
            *[
                self.run_branch(target, branch_ctx)
                for target, branch_ctx in zip(node.outputs, branch_contexts, strict=True)
            ],
            return_exceptions=True,
        )

        values = ChainValues()
        for target, branch_ctx, result in zip(node.outputs, branch_contexts, results, strict=True):
            if isinstance(result, (asyncio.CancelledError, EngineFault)):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"Branch {target}: exception - {result}")
                branch_ctx.record_error(target, str(result))
                result = {"node_id": target, "success": False, "error": str(result)}
            context.absorb(branch_ctx)
            values.append(result)

        joined: dict[str, Any] = {}
        for join_id in joins:
            logger.info(f"Fan-in: converging at {join_id}")
            joined[join_id] = await self.run_branch(join_id, context)

        return NodeResult(success=True, output=settle(values, joined), next_nodes=[])


class MergeHandler(NodeHandler):
    """Combines the outputs of the node's inputs."""

    node_type = NodeType.MERGE

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        present = [
            (source, context.node_results[source])
            for source in node.inputs
            if source in context.node_results
        ]

        if node.config.get("merge_strategy") == "concat":
            merged_list: list[Any] = []
            for _, value in present:
                if isinstance(value, list):
                    merged_list.extend(value)
                else:
                    merged_list.append(value)
            output: Any = merged_list
        else:
            merged: dict[str, Any] = {}
            for source, value in present:
                if isinstance(value, dict):
                    merged.update(value)
                else:
                    merged[source] = value
            output = merged

        return NodeResult(success=True, output=output, next_nodes=list(node.outputs))


class MemoryHandler(NodeHandler):
    """Stores to or searches an agent's memory."""

    node_type = NodeType.MEMORY
    io_bound = True

    def __init__(self, memory_store: MemoryStore | None = None, **kwargs: Any):
        super().__init__(**kwargs)
        self.memory_store = memory_store

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        if self.memory_store is None:
            raise NodeExecutionError(node.id, "No memory store configured")
        cfg = node.config
        agent_id = cfg.get("agent_id")
        operation = cfg.get("operation")

        if operation == "store":
            content = self.resolver.render(cfg.get("content", ""), context)
            ack = await self.memory_store.store(
                agent_id,
                content,
                memory_type=cfg.get("memory_type", "general"),
                importance=cfg.get("importance", 0.5),
                tags=list(cfg.get("tags") or []),
            )
            output: Any = ack
        elif operation == "retrieve":
            query = self.resolver.render(cfg.get("query", ""), context)
            matches = await self.memory_store.search(
                agent_id,
                query,
                threshold=cfg.get("threshold", 0.7),
                limit=cfg.get("limit", 5),
            )
            output = {"matches": list(matches or [])}
        else:
            raise NodeExecutionError(node.id, f"Unknown memory operation: {operation}")

        return NodeResult(success=True, output=output, next_nodes=list(node.outputs))


class TransformHandler(NodeHandler):
    """format / filter / aggregate over a resolved value."""

    node_type = NodeType.TRANSFORM

    AGGREGATE_OPERATIONS = ("count", "sum", "avg", "max", "min")

    async def execute(self, node: FlowNode, context: ExecutionContext) -> NodeResult:
        cfg = node.config
        value = self._input_value(cfg, context)
        transform_type = cfg.get("transform_type")

        if transform_type == "format":
            output = self._format(node, value, cfg.get("format", "json"))
        elif transform_type == "filter":
            criteria = self.resolver.resolve_value(cfg.get("filter_criteria") or {}, context)
            output = self._filter(node, value, criteria)
        elif transform_type == "aggregate":
            output = self._aggregate(node, value, cfg.get("operation"), cfg.get("field"))
        else:
            raise NodeExecutionError(node.id, f"Unknown transform type: {transform_type}")

        return NodeResult(success=True, output=output, next_nodes=list(node.outputs))

    def _input_value(self, cfg: dict[str, Any], context: ExecutionContext) -> Any:
        ref = cfg.get("input")
        if ref is None:
            return context.input
        if isinstance(ref, str) and "{{" not in ref:
            return self.resolver.resolve(ref, context)
        return self.resolver.resolve_value(ref, context)

    def _format(self, node: FlowNode, value: Any, fmt: str) -> Any:
        if value is UNDEFINED:
            value = None
        if fmt == "json":
            return json.dumps(value, default=str, ensure_ascii=False)
        if fmt == "string":
            return "" if value is None else to_text(value)
        if fmt == "number":
            number = as_number(value)
            if number is None:
                raise NodeExecutionError(node.id, f"Cannot format {value!r} as a number")
            return int(number) if number.is_integer() else number
        raise NodeExecutionError(node.id, f"Unknown format: {fmt}")

    def _filter(self, node: FlowNode, value: Any, criteria: dict[str, Any]) -> list[Any]:
        if not isinstance(value, list):
            raise NodeExecutionError(node.id, "Filter transform requires a list input")
        return [
            item
            for item in value
            if isinstance(item, dict)
            and all(loose_equals(item.get(key), expected) for key, expected in criteria.items())
        ]

    def _aggregate(
        self,
        node: FlowNode,
        value: Any,
        operation: str | None,
        field_name: str | None,
    ) -> Any:
        if operation not in self.AGGREGATE_OPERATIONS:
            raise NodeExecutionError(node.id, f"Unknown aggregate operation: {operation}")
        if not isinstance(value, list):
            raise NodeExecutionError(node.id, "Aggregate transform requires a list input")

        items = value
        if field_name:
            items = [
                item[field_name] for item in value if isinstance(item, dict) and field_name in item
            ]
        if operation == "count":
            return len(items)

        numbers = [n for n in (as_number(item) for item in items) if n is not None]
        if operation == "sum":
            return _tidy(sum(numbers))
        if not numbers:
            return None
        if operation == "avg":
            return sum(numbers) / len(numbers)
        if operation == "max":
            return _tidy(max(numbers))
        return _tidy(min(numbers))


def _tidy(number: float) -> int | float:
    return int(number) if float(number).is_integer() else number


HANDLER_TYPES: dict[NodeType, type[NodeHandler]] = {
    NodeType.START: StartHandler,
    NodeType.AGENT: AgentHandler,
    NodeType.CONNECTOR: ConnectorHandler,
    NodeType.CONDITION: ConditionHandler,
    NodeType.PARALLEL: ParallelHandler,
    NodeType.MERGE: MergeHandler,
    NodeType.MEMORY: MemoryHandler,
    NodeType.TRANSFORM: TransformHandler,
}


def build_handler_registry(
    agent_executor: AgentExecutor | None = None,
    connector_executor: ConnectorExecutor | None = None,
    memory_store: MemoryStore | None = None,
    run_branch: BranchRunner | None = None,
    graph: Mapping[str, FlowNode] | None = None,
    resolver: ContextResolver | None = None,
    config: EngineConfig | None = None,
    event_bus: "EventBus | None" = None,
) -> dict[NodeType, NodeHandler]:
    """Instantiate one handler per NodeType, failing if any type is left without one."""
    missing = set(NodeType) - set(HANDLER_TYPES)
    if missing:
        raise EngineFault(f"No handler registered for node types: {sorted(missing)}")

    common = {"resolver": resolver, "config": config, "event_bus": event_bus}
    return {
        NodeType.START: StartHandler(**common),
        NodeType.AGENT: AgentHandler(agent_executor=agent_executor, **common),
        NodeType.CONNECTOR: ConnectorHandler(connector_executor=connector_executor, **common),
        NodeType.CONDITION: ConditionHandler(**common),
        NodeType.PARALLEL: ParallelHandler(run_branch=run_branch, graph=graph, **common),
        NodeType.MERGE: MergeHandler(**common),
        NodeType.MEMORY: MemoryHandler(memory_store=memory_store, **common),
        NodeType.TRANSFORM: TransformHandler(**common),
    }
