"""
Flow Executor - Runs a flow graph end to end.

The executor:
1. Validates the graph and resolves the execution plan (cycles abort here,
   before any node runs)
2. Starts every node whose predecessors have all reached a terminal state,
   running independent branches concurrently
3. Resolves each node's {{variables}} against results recorded so far
4. Dispatches to the node's executor under a per-node timeout
5. Records exactly one terminal result per node in the run's result store

Node failures never escape ``run``: they are recorded on the node. With
``error_handling="continue"`` dependents still run and see the failed node
as an empty string; with ``"stop"`` every node that has not started yet is
skipped after the first failure.
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from flowengine.config import RunSettings
from flowengine.graph.cancellation import CancellationToken
from flowengine.graph.errors import (
    CancellationError,
    ConfigurationError,
    ExecutorFailure,
)
from flowengine.graph.flow import FlowGraph, NodeSpec
from flowengine.graph.resolver import ExecutionPlan, resolve_execution_plan
from flowengine.graph.results import ExecutionResult, ExecutionResultStore, NodeStatus
from flowengine.graph.variables import VariableResolver, VariableScope
from flowengine.nodes.base import NodeContext, NodeRegistry
from flowengine.nodes.notes import passthrough
from flowengine.observability.logging import set_trace_context
from flowengine.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)


@dataclass
class FlowRunResult:
    """Outcome of one run: every node's terminal result, read-only."""

    run_id: str
    flow_id: str
    order: list[str]
    results: Mapping[str, ExecutionResult]
    cancelled: bool = False
    cancel_reason: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None

    @property
    def has_errors(self) -> bool:
        return any(r.status == NodeStatus.ERROR for r in self.results.values())

    @property
    def failed_nodes(self) -> list[str]:
        return [node_id for node_id, r in self.results.items() if r.status == NodeStatus.ERROR]

    @property
    def skipped_nodes(self) -> list[str]:
        return [node_id for node_id, r in self.results.items() if r.status == NodeStatus.SKIPPED]

    @property
    def duration_ms(self) -> int:
        if self.ended_at is None:
            return 0
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    def outputs(self) -> dict[str, Any]:
        """Output of every successful node, keyed by node id."""
        return {
            node_id: r.output
            for node_id, r in self.results.items()
            if r.status == NodeStatus.SUCCESS
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "flow_id": self.flow_id,
            "order": list(self.order),
            "has_errors": self.has_errors,
            "failed_nodes": self.failed_nodes,
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "results": {node_id: r.to_dict() for node_id, r in self.results.items()},
        }


class FlowExecutor:
    """
    Executes flow graphs.

    Example:
        executor = FlowExecutor(registry=default_registry(provider))
        run = await executor.run(graph, inputs={"topic": "tides"})
        for node_id in run.order:
            print(node_id, run.results[node_id].status)
    """

    def __init__(
        self,
        registry: NodeRegistry,
        event_bus: EventBus | None = None,
        settings: RunSettings | None = None,
        credentials: Mapping[str, str] | None = None,
    ):
        self.registry = registry
        self.event_bus = event_bus
        self.settings = settings or RunSettings()
        self.credentials = dict(credentials or {})

    async def run(
        self,
        graph: FlowGraph,
        inputs: dict[str, Any] | None = None,
        initial_outputs: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
        credentials: Mapping[str, str] | None = None,
    ) -> FlowRunResult:
        """
        Run every node of ``graph`` once.

        Args:
            graph: The flow to run
            inputs: Run input variables, referenced as {{name}}
            initial_outputs: Payloads for trigger nodes (webhook-in), by node id
            cancel_token: Signal to stop the run early
            run_id: Identifier for logs and events (generated when omitted)
            credentials: Credential id -> secret, merged over the executor's own

        Raises:
            ConfigurationError: the graph itself is malformed
            GraphCycleError: the graph contains a cycle
        """
        errors = graph.validate()
        if errors:
            raise ConfigurationError(f"Invalid flow graph: {'; '.join(errors)}")
        plan = resolve_execution_plan(graph)

        run = _RunState(
            graph=graph,
            plan=plan,
            run_id=run_id or uuid.uuid4().hex,
            inputs=dict(inputs or {}),
            initial_outputs=dict(initial_outputs or {}),
            cancel_token=cancel_token or CancellationToken(),
            credentials={**self.credentials, **(credentials or {})},
        )
        set_trace_context(run_id=run.run_id, flow_id=graph.id)

        logger.info(f"🚀 Starting run {run.run_id[:8]} of flow '{graph.name or graph.id}'")
        logger.info(f"   Order: {' → '.join(plan.order) or '(empty)'}")
        if self.event_bus:
            await self.event_bus.emit_run_started(graph.id, run.run_id, plan.order, run.inputs)

        started_at = datetime.now(UTC)
        await self._schedule(run)
        run.store.freeze()

        result = FlowRunResult(
            run_id=run.run_id,
            flow_id=graph.id,
            order=list(plan.order),
            results=run.store.view(),
            cancelled=run.cancelled,
            cancel_reason=run.cancel_token.reason if run.cancelled else None,
            started_at=started_at,
            ended_at=datetime.now(UTC),
        )

        if result.cancelled:
            logger.warning(f"⏹ Run cancelled: {result.cancel_reason}")
            if self.event_bus:
                await self.event_bus.emit_run_cancelled(
                    graph.id, run.run_id, result.cancel_reason or ""
                )
        elif result.has_errors:
            logger.warning(f"⚠ Run finished with errors in: {', '.join(result.failed_nodes)}")
        else:
            logger.info(f"✓ Run finished: {len(plan.order)} node(s) in {result.duration_ms}ms")

        if self.event_bus:
            await self.event_bus.emit_run_completed(
                graph.id, run.run_id, result.has_errors, result.failed_nodes
            )
        return result

    # === SCHEDULING ===

    async def _schedule(self, run: "_RunState") -> None:
        plan = run.plan
        limit = self.settings.effective_concurrency
        remaining = {node_id: len(preds) for node_id, preds in plan.predecessors.items()}
        ready: list[str] = list(plan.roots)
        running: dict[asyncio.Task, str] = {}
        stopped = False

        cancel_waiter = asyncio.ensure_future(run.cancel_token.wait())
        try:
            while ready or running:
                if run.cancel_token.is_cancelled:
                    await self._cancel(run, running)
                    return

                if not stopped:
                    ready.sort(key=plan.position)
                    while ready and (limit is None or len(running) < limit):
                        node_id = ready.pop(0)
                        task = asyncio.create_task(self._run_node(run, node_id))
                        running[task] = node_id

                if not running:
                    break

                done, _ = await asyncio.wait(
                    set(running) | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )

                if cancel_waiter in done:
                    await self._cancel(run, running)
                    return

                for task in done:
                    node_id = running.pop(task)
                    result = run.store[node_id]
                    for succ in plan.successors[node_id]:
                        remaining[succ] -= 1
                        if remaining[succ] == 0:
                            ready.append(succ)

                    if (
                        result.status == NodeStatus.ERROR
                        and self.settings.error_handling == "stop"
                        and not stopped
                    ):
                        stopped = True
                        logger.warning(f"⏹ Stopping after failure of '{node_id}'")
                        await self._skip_pending(run, f"Skipped: upstream node '{node_id}' failed")
        finally:
            if not cancel_waiter.done():
                cancel_waiter.cancel()

    async def _cancel(self, run: "_RunState", running: dict[asyncio.Task, str]) -> None:
        reason = run.cancel_token.reason or "Run cancelled"
        run.cancelled = True
        logger.warning(f"⏹ Cancellation requested: {reason}")
        await self._skip_pending(run, f"cancelled: {reason}")

        if not running:
            return
        grace = self.settings.cancel_grace_seconds
        _, still_running = await asyncio.wait(set(running), timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

        for task, node_id in running.items():
            if run.store.status(node_id) == NodeStatus.RUNNING:
                result = ExecutionResult(
                    node_id=node_id, status=NodeStatus.ERROR, error=f"cancelled: {reason}"
                )
                run.store.record(result)
                await self._emit_terminal(run, result)

    async def _skip_pending(self, run: "_RunState", reason: str) -> None:
        for node_id in run.store.with_status(NodeStatus.PENDING):
            run.store.skip(node_id, reason)
            logger.info(f"   ⤼ {node_id}: {reason}")
            if self.event_bus:
                await self.event_bus.emit_node_skipped(run.graph.id, run.run_id, node_id, reason)

    # === NODE EXECUTION ===

    async def _run_node(self, run: "_RunState", node_id: str) -> ExecutionResult:
        set_trace_context(node_id=node_id)
        node = run.graph.get_node(node_id)
        assert node is not None

        run.store.mark_running(node_id)
        logger.info(f"▶ {node.title} ({node.type})")
        if self.event_bus:
            await self.event_bus.emit_node_started(run.graph.id, run.run_id, node_id, node.type)

        ctx = self._build_context(run, node)
        result = await self._dispatch(ctx)

        for warning in ctx.resolver.unresolved:
            result.warnings.append(str(warning))
            logger.warning(f"   ⚠ {warning}")
            if self.event_bus:
                await self.event_bus.emit_dependency_unresolved(
                    run.graph.id, run.run_id, node_id, warning.token, warning.reason
                )

        if run.store.status(node_id) != NodeStatus.RUNNING:
            # Already finalised (e.g. by the cancellation path)
            return run.store[node_id]
        run.store.record(result)
        await self._emit_terminal(run, result)
        return result

    def _build_context(self, run: "_RunState", node: NodeSpec) -> NodeContext:
        positional = run.graph.predecessors(node.id)
        scope = VariableScope(
            results=run.store.view(),
            positional=positional,
            aliases=run.aliases,
            variables=run.inputs,
        )
        return NodeContext(
            node=node,
            resolver=VariableResolver(scope, node_id=node.id),
            results=run.store.view(),
            input_result=run.store[positional[0]] if positional else None,
            variables=run.inputs,
            credentials=run.credentials,
            cancel_token=run.cancel_token,
            event_bus=self.event_bus,
            flow_id=run.graph.id,
            run_id=run.run_id,
            initial_output=run.initial_outputs.get(node.id),
            default_model=self.settings.default_model,
            agent_max_steps=self.settings.agent_max_steps,
        )

    async def _dispatch(self, ctx: NodeContext) -> ExecutionResult:
        node = ctx.node
        if node.bypassed:
            return self._bypass(ctx)

        timeout: float | None = None
        try:
            executor = self.registry.get(node.type)
            problems = executor.validate_config(node)
            if problems:
                raise ConfigurationError("; ".join(problems))
            timeout = executor.node_timeout(node) or self.settings.node_timeout_seconds
            ctx.cancel_token.raise_if_cancelled()
            return await asyncio.wait_for(executor.execute(ctx), timeout=timeout)
        except ConfigurationError as e:
            return _error(node.id, f"Configuration error: {e}")
        except ExecutorFailure as e:
            result = _error(node.id, str(e))
            result.metadata["attempts"] = e.attempts
            result.agent_steps = list(e.agent_steps)
            return result
        except CancellationError as e:
            return _error(node.id, f"cancelled: {e.reason}")
        except TimeoutError:
            return _error(node.id, f"Timed out after {timeout}s")
        except Exception as e:
            logger.exception(f"   ✗ Unexpected error in '{node.id}'")
            return _error(node.id, f"{type(e).__name__}: {e}")

    def _bypass(self, ctx: NodeContext) -> ExecutionResult:
        if ctx.input_result is None and "input" in ctx.variables:
            return ctx.success(ctx.variables["input"], metadata={"mode": "bypassed"})
        return passthrough(ctx, mode="bypassed")

    async def _emit_terminal(self, run: "_RunState", result: ExecutionResult) -> None:
        if result.status == NodeStatus.SUCCESS:
            logger.info(f"   ✓ {result.node_id} ({result.metrics.duration_ms}ms)")
            if self.event_bus:
                await self.event_bus.emit_node_completed(
                    run.graph.id,
                    run.run_id,
                    result.node_id,
                    result.output,
                    result.metrics.duration_ms,
                )
        elif result.status == NodeStatus.ERROR:
            logger.error(f"   ✗ {result.node_id}: {result.error}")
            if self.event_bus:
                await self.event_bus.emit_node_failed(
                    run.graph.id, run.run_id, result.node_id, result.error or ""
                )


@dataclass
class _RunState:
    graph: FlowGraph
    plan: ExecutionPlan
    run_id: str
    inputs: dict[str, Any]
    initial_outputs: dict[str, Any]
    cancel_token: CancellationToken
    credentials: dict[str, str]
    cancelled: bool = False
    store: ExecutionResultStore = field(init=False)
    aliases: dict[str, str] = field(init=False)

    def __post_init__(self):
        self.store = ExecutionResultStore(self.graph.node_ids(), run_id=self.run_id)
        self.aliases = {n.alias: n.id for n in self.graph.nodes if n.alias}


def _error(node_id: str, message: str) -> ExecutionResult:
    return ExecutionResult(node_id=node_id, status=NodeStatus.ERROR, error=message)
