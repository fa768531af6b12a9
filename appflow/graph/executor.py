"""
Flow Executor - Depth-first traversal of an app's flow graph.

Walks the graph from its start node with an explicit frame stack:

1. Run the node's handler and record its output (or its error)
2. Visit each of the node's next_nodes in order
3. Fold the children's chain values into this node's chain value

A node with no successors yields its own output, a node with one successor
yields that chain's value and a node with several yields the list of them.
A node is never run twice in one traversal: reaching a finished node reuses
its value, reaching a node that is still being expanded is a cycle.

Merge nodes are joins. A merge reached while one of its inputs can still be
produced by queued work is put off and runs when that input settles; a
merge whose missing inputs never arrive runs with the ones that did once
the rest of the traversal is done. Until it runs, its chain value is a
PendingJoin marker that is settled before the traversal returns.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from appflow.config import EngineConfig
from appflow.errors import EngineFault, FlowCycleError
from appflow.graph.context import ContextResolver, ExecutionContext
from appflow.graph.node import (
    ChainValues,
    NodeHandler,
    NodeResult,
    PendingJoin,
    build_handler_registry,
    settle,
)
from appflow.graph.topology import reachable
from appflow.observability import get_trace_context, set_trace_context
from appflow.schemas.app import FlowNode, NodeType
from appflow.services.collaborators import AgentExecutor, ConnectorExecutor, MemoryStore

if TYPE_CHECKING:
    from appflow.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

_NOT_FINISHED = object()


def failure_value(node_id: str, error: str | None) -> dict[str, Any]:
    """Chain value contributed by a node that failed."""
    return {"node_id": node_id, "success": False, "error": error or "Unknown error"}


@dataclass
class _Frame:
    """A node being expanded."""

    node_id: str
    value: Any
    successors: list[str]
    index: int = 0
    child_values: list[Any] = field(default_factory=list)

    def chain_value(self) -> Any:
        if not self.successors:
            return self.value
        if len(self.child_values) == 1:
            return self.child_values[0]
        return ChainValues(self.child_values)


class FlowExecutor:
    """
    Executes flow graphs.

    One executor can serve any number of concurrent executions; all
    per-execution state lives in the ExecutionContext passed to run_flow.

    Example:
        executor = FlowExecutor(
            agent_executor=agents,
            connector_executor=connectors,
            memory_store=memory,
        )
        context = ExecutionContext(input={"score": 5})
        output = await executor.run_flow(app.flow_definition, context)
    """

    def __init__(
        self,
        agent_executor: AgentExecutor | None = None,
        connector_executor: ConnectorExecutor | None = None,
        memory_store: MemoryStore | None = None,
        config: EngineConfig | None = None,
        event_bus: "EventBus | None" = None,
        resolver: ContextResolver | None = None,
    ):
        self.agent_executor = agent_executor
        self.connector_executor = connector_executor
        self.memory_store = memory_store
        self.config = config or EngineConfig()
        self.resolver = resolver or ContextResolver()
        self._event_bus = event_bus

        # Fails at construction if a node type has no handler
        self._handlers = self._build_handlers(flow=[])

    @staticmethod
    def _index(flow: list[FlowNode]) -> dict[str, FlowNode]:
        nodes: dict[str, FlowNode] = {}
        for node in flow:
            nodes.setdefault(node.id, node)
        return nodes

    def _build_handlers(self, flow: list[FlowNode]) -> dict[NodeType, NodeHandler]:
        async def run_branch(node_id: str, context: ExecutionContext) -> Any:
            return await self.run_branch(node_id, context, flow)

        return build_handler_registry(
            agent_executor=self.agent_executor,
            connector_executor=self.connector_executor,
            memory_store=self.memory_store,
            run_branch=run_branch,
            graph=self._index(flow),
            resolver=self.resolver,
            config=self.config,
            event_bus=self._event_bus,
        )

    @staticmethod
    def find_start_node(flow: list[FlowNode]) -> FlowNode | None:
        """First node with no inputs or of type start."""
        for node in flow:
            if node.is_start:
                return node
        return None

    async def run_flow(self, flow: list[FlowNode], context: ExecutionContext) -> Any:
        """Traverse the flow from its start node and return the final output."""
        start = self.find_start_node(flow)
        if start is None:
            raise EngineFault("Flow has no start node")

        logger.info(f"Running flow from start node '{start.id}' ({len(flow)} nodes)")
        return await self.run_branch(start.id, context, flow)

    async def run_branch(
        self,
        node_id: str,
        context: ExecutionContext,
        flow: list[FlowNode],
    ) -> Any:
        """Traverse the sub-graph reachable from node_id and return its chain value."""
        handlers = self._build_handlers(flow)
        return await self._traverse(node_id, context, self._index(flow), handlers)

    async def _traverse(
        self,
        root_id: str,
        context: ExecutionContext,
        nodes: dict[str, FlowNode],
        handlers: dict[NodeType, NodeHandler],
    ) -> Any:
        ancestors = list(context.active_path)
        finished: dict[str, Any] = {}
        deferred: list[str] = []
        stack: list[_Frame] = []
        pending: str | None = root_id
        forced: str | None = None
        result: Any = _NOT_FINISHED

        try:
            while True:
                if pending is not None:
                    node_id, pending = pending, None
                    on_stack = [frame.node_id for frame in stack]
                    if node_id in on_stack or node_id in ancestors:
                        raise FlowCycleError(node_id, [*ancestors, *on_stack])

                    value = self._known_value(node_id, context, finished)
                    if value is _NOT_FINISHED and node_id in context.held_joins:
                        value = PendingJoin(node_id)
                    elif value is _NOT_FINISHED and node_id != forced:
                        if self._must_wait(node_id, context, nodes, stack, deferred, finished):
                            if node_id not in deferred:
                                deferred.append(node_id)
                            value = PendingJoin(node_id)
                    if value is _NOT_FINISHED:
                        context.active_path = [*ancestors, *on_stack, node_id]
                        stack.append(await self._run_node(node_id, context, nodes, handlers))
                        continue
                elif stack:
                    frame = stack[-1]
                    if frame.index < len(frame.successors):
                        pending = frame.successors[frame.index]
                        frame.index += 1
                        continue
                    stack.pop()
                    value = frame.chain_value()
                    finished[frame.node_id] = value
                else:
                    # Merges whose missing inputs were never produced run with what exists
                    waiting = [
                        m for m in deferred if m not in finished and not context.is_visited(m)
                    ]
                    if not waiting:
                        for merge_id in deferred:
                            if merge_id not in finished:
                                finished[merge_id] = self._known_value(merge_id, context, finished)
                        return settle(result, finished)
                    pending = forced = waiting[0]
                    continue

                if stack:
                    stack[-1].child_values.append(value)
                elif result is _NOT_FINISHED:
                    result = value
        finally:
            context.active_path = ancestors

    def _known_value(
        self,
        node_id: str,
        context: ExecutionContext,
        finished: dict[str, Any],
    ) -> Any:
        if node_id in finished:
            return finished[node_id]
        if not context.is_visited(node_id):
            return _NOT_FINISHED
        if node_id in context.node_results:
            return context.node_results[node_id]
        return failure_value(node_id, context.node_errors[node_id])

    def _must_wait(
        self,
        node_id: str,
        context: ExecutionContext,
        nodes: dict[str, FlowNode],
        stack: list[_Frame],
        deferred: list[str],
        finished: dict[str, Any],
    ) -> bool:
        """True for a merge node with a missing input that work still queued can produce."""
        node = nodes.get(node_id)
        if node is None or node.type != NodeType.MERGE:
            return False
        missing = [source for source in node.inputs if not context.is_visited(source)]
        if not missing:
            return False

        roots = [target for frame in stack for target in frame.successors[frame.index :]]
        roots.extend(m for m in deferred if m != node_id)

        def settled(candidate: str) -> bool:
            return (
                candidate == node_id
                or candidate in context.held_joins
                or self._known_value(candidate, context, finished) is not _NOT_FINISHED
            )

        upcoming = reachable(roots, nodes, skip=settled)
        return any(source in upcoming for source in missing)

    async def _run_node(
        self,
        node_id: str,
        context: ExecutionContext,
        nodes: dict[str, FlowNode],
        handlers: dict[NodeType, NodeHandler],
    ) -> _Frame:
        context.execution_path.append(node_id)
        context.current_node = node_id

        node = nodes.get(node_id)
        if node is None:
            error = f"Node '{node_id}' not found in flow"
            logger.error(error)
            context.record_error(node_id, error)
            return _Frame(node_id=node_id, value=failure_value(node_id, error), successors=[])

        set_trace_context(node_id=node_id)
        logger.info(f"Executing node {node.label} ({node.type})", extra={"node_type": node.type})
        await self._emit_node_started(node)

        result: NodeResult = await handlers[node.type].run(node, context)

        if result.success:
            context.record_result(node_id, result.output)
            logger.info(
                f"Node {node.label} completed in {result.duration_ms}ms",
                extra={"event": "node_completed", "duration_ms": result.duration_ms},
            )
            await self._emit_node_completed(node, result)
            return _Frame(node_id=node_id, value=result.output, successors=list(result.next_nodes))

        error = result.error or "Unknown error"
        context.record_error(node_id, error)
        logger.warning(
            f"Node {node.label} failed: {error}",
            extra={"event": "node_failed", "duration_ms": result.duration_ms},
        )
        await self._emit_node_failed(node, error)
        return _Frame(node_id=node_id, value=failure_value(node_id, error), successors=[])

    # === EVENTS ===

    async def _emit_node_started(self, node: FlowNode) -> None:
        if self._event_bus:
            trace = get_trace_context()
            await self._event_bus.emit_node_started(
                app_id=trace.get("app_id", ""),
                execution_id=trace.get("execution_id"),
                node_id=node.id,
                node_type=node.type.value,
            )

    async def _emit_node_completed(self, node: FlowNode, result: NodeResult) -> None:
        if self._event_bus:
            trace = get_trace_context()
            await self._event_bus.emit_node_completed(
                app_id=trace.get("app_id", ""),
                execution_id=trace.get("execution_id"),
                node_id=node.id,
                duration_ms=result.duration_ms,
                next_nodes=result.next_nodes,
            )

    async def _emit_node_failed(self, node: FlowNode, error: str) -> None:
        if self._event_bus:
            trace = get_trace_context()
            await self._event_bus.emit_node_failed(
                app_id=trace.get("app_id", ""),
                execution_id=trace.get("execution_id"),
                node_id=node.id,
                error=error,
            )
