"""
Tests for FlowExecutor scheduling, failure propagation and cancellation.
Fake node executors record what they saw; no real providers are involved.
"""

import asyncio
import dataclasses

import pytest

from flowengine.graph.cancellation import CancellationToken
from flowengine.graph.errors import ConfigurationError, ExecutorFailure, GraphCycleError
from flowengine.graph.executor import FlowExecutor
from flowengine.graph.flow import EdgeSpec, FlowGraph, NodeSpec
from flowengine.graph.results import ExecutionResult, NodeStatus
from flowengine.nodes.base import NodeContext, NodeExecutor, NodeRegistry
from flowengine.nodes.notes import NotesExecutor
from flowengine.nodes.webhook_in import WebhookInExecutor
from flowengine.runtime.event_bus import EventBus, EventType


class RecordingExecutor(NodeExecutor):
    """Renders ``data.text`` (default ``{{1}}``) after an optional delay."""

    def __init__(self):
        self.log: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        self.log.append(("start", ctx.node_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(ctx.node.data.get("delay", 0))
            if ctx.node.data.get("fail"):
                raise ExecutorFailure(f"{ctx.node_id} exploded", attempts=2)
            if ctx.node.data.get("crash"):
                raise ValueError("bad value")
            return ctx.success(ctx.resolve(ctx.node.data.get("text", "{{1}}")))
        finally:
            self.active -= 1
            self.log.append(("end", ctx.node_id))

    def index(self, kind: str, node_id: str) -> int:
        return self.log.index((kind, node_id))


class CancellableExecutor(NodeExecutor):
    """Waits on the run's cancellation token."""

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        await ctx.cancel_token.sleep(10)
        return ctx.success("finished")


def _graph(nodes, edges, graph_id="flow-1"):
    return FlowGraph(
        id=graph_id,
        nodes=[n if isinstance(n, NodeSpec) else NodeSpec(id=n, type="step") for n in nodes],
        edges=[EdgeSpec(source=s, target=t) for s, t in edges],
    )


def _node(node_id, node_type="step", **data):
    return NodeSpec(id=node_id, type=node_type, data=data)


@pytest.fixture
def recorder():
    return RecordingExecutor()


@pytest.fixture
def registry(recorder):
    registry = NodeRegistry()
    registry.register("step", recorder)
    registry.register("wait", CancellableExecutor())
    registry.register("notes", NotesExecutor())
    registry.register("webhook-in", WebhookInExecutor())
    return registry


@pytest.mark.asyncio
async def test_diamond_runs_join_after_both_branches(registry, recorder, settings):
    graph = _graph(
        [
            _node("A", text="root"),
            _node("B", delay=0.05, text="b({{A}})"),
            _node("C", delay=0.05, text="c({{A}})"),
            _node("D", text="{{1}}+{{2}}"),
        ],
        [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")],
    )

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert not result.has_errors
    assert result.results["D"].output == "b(root)+c(root)"
    assert recorder.index("start", "D") > recorder.index("end", "B")
    assert recorder.index("start", "D") > recorder.index("end", "C")
    # B and C overlap
    assert recorder.index("start", "C") < recorder.index("end", "B")
    assert recorder.max_active == 2
    assert result.order[0] == "A" and result.order[-1] == "D"


@pytest.mark.asyncio
async def test_every_node_gets_exactly_one_terminal_result(registry, settings):
    graph = _graph(["a", "b", "c"], [("a", "b")])

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert set(result.results) == {"a", "b", "c"}
    assert all(r.status.is_terminal for r in result.results.values())


@pytest.mark.asyncio
async def test_failed_predecessor_resolves_to_empty_string(registry, settings):
    graph = _graph(
        [_node("A", fail=True), _node("B", text="[{{A}}]"), _node("C", text="independent")],
        [("A", "B")],
    )

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert result.results["A"].status == NodeStatus.ERROR
    assert result.results["A"].error == "A exploded"
    assert result.results["A"].metadata["attempts"] == 2
    assert result.results["B"].status == NodeStatus.SUCCESS
    assert result.results["B"].output == "[]"
    assert result.results["C"].status == NodeStatus.SUCCESS
    assert result.has_errors
    assert result.failed_nodes == ["A"]


@pytest.mark.asyncio
async def test_stop_mode_skips_nodes_not_yet_started(registry, settings):
    settings = dataclasses.replace(settings, error_handling="stop")
    graph = _graph(
        [_node("A", fail=True), _node("B"), _node("slow", delay=0.05, text="done")],
        [("A", "B")],
    )

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert result.results["A"].status == NodeStatus.ERROR
    assert result.results["B"].status == NodeStatus.SKIPPED
    assert result.results["B"].error == "Skipped: upstream node 'A' failed"
    # Already running when A failed
    assert result.results["slow"].status == NodeStatus.SUCCESS


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_node_error(registry, settings):
    graph = _graph([_node("A", crash=True), _node("B", text="after")], [("A", "B")])

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert result.results["A"].error == "ValueError: bad value"
    assert result.results["B"].output == "after"


@pytest.mark.asyncio
async def test_unknown_node_type_is_configuration_error(registry, settings):
    graph = _graph([_node("A", node_type="quantum"), _node("B", text="ok")], [("A", "B")])

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert result.results["A"].status == NodeStatus.ERROR
    assert result.results["A"].error.startswith("Configuration error:")
    assert "quantum" in result.results["A"].error
    assert result.results["B"].status == NodeStatus.SUCCESS


@pytest.mark.asyncio
async def test_node_timeout_from_node_data(registry, settings):
    graph = _graph([_node("A", delay=1, timeoutMs=50)], [])

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert result.results["A"].status == NodeStatus.ERROR
    assert result.results["A"].error == "Timed out after 0.05s"


@pytest.mark.asyncio
async def test_bypassed_node_forwards_input(registry, settings):
    graph = _graph(
        [
            _node("A", text="hello"),
            _node("B", node_type="anthropic", bypassed=True, userPrompt="never sent"),
            _node("C", text="got {{B}}"),
        ],
        [("A", "B"), ("B", "C")],
    )

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert result.results["B"].status == NodeStatus.SUCCESS
    assert result.results["B"].output == "hello"
    assert result.results["B"].metadata["mode"] == "bypassed"
    assert result.results["C"].output == "got hello"


@pytest.mark.asyncio
async def test_bypassed_root_uses_run_input(registry, settings):
    graph = _graph([_node("A", bypassed=True)], [])

    result = await FlowExecutor(registry, settings=settings).run(graph, inputs={"input": "seed"})

    assert result.results["A"].output == "seed"


@pytest.mark.asyncio
async def test_cycle_aborts_before_any_node_runs(registry, recorder, settings):
    graph = _graph(["start", "x", "y"], [("start", "x"), ("x", "y"), ("y", "x")])

    with pytest.raises(GraphCycleError):
        await FlowExecutor(registry, settings=settings).run(graph)

    assert recorder.log == []


@pytest.mark.asyncio
async def test_invalid_graph_raises_configuration_error(registry, settings):
    graph = FlowGraph(nodes=[_node("a"), _node("a")])

    with pytest.raises(ConfigurationError, match="Duplicate node ID"):
        await FlowExecutor(registry, settings=settings).run(graph)


@pytest.mark.asyncio
async def test_sequential_mode_runs_one_node_at_a_time(registry, recorder, settings):
    settings = dataclasses.replace(settings, execution_mode="sequential")
    graph = _graph([_node(n, delay=0.01) for n in ["a", "b", "c", "d"]], [])

    result = await FlowExecutor(registry, settings=settings).run(graph)

    assert not result.has_errors
    assert recorder.max_active == 1
    assert [node_id for kind, node_id in recorder.log if kind == "start"] == ["a", "b", "c", "d"]


@pytest.mark.asyncio
async def test_max_concurrency_bounds_parallel_nodes(registry, recorder, settings):
    settings = dataclasses.replace(settings, max_concurrency=2)
    graph = _graph([_node(n, delay=0.02) for n in ["a", "b", "c", "d", "e"]], [])

    await FlowExecutor(registry, settings=settings).run(graph)

    assert recorder.max_active == 2


@pytest.mark.asyncio
async def test_cancellation_skips_pending_and_stops_running(registry, settings):
    graph = _graph([_node("A", delay=10), _node("B")], [("A", "B")])
    token = CancellationToken()

    async def cancel_soon():
        await asyncio.sleep(0.05)
        token.cancel("user stop")

    asyncio.create_task(cancel_soon())
    result = await FlowExecutor(registry, settings=settings).run(graph, cancel_token=token)

    assert result.cancelled
    assert result.cancel_reason == "user stop"
    assert result.results["A"].status == NodeStatus.ERROR
    assert result.results["A"].error == "cancelled: user stop"
    assert result.results["B"].status == NodeStatus.SKIPPED
    assert result.results["B"].error == "cancelled: user stop"


@pytest.mark.asyncio
async def test_cooperative_node_observes_cancellation(registry, settings):
    graph = _graph([_node("W", node_type="wait")], [])
    token = CancellationToken()

    async def cancel_soon():
        await asyncio.sleep(0.02)
        token.cancel("shutdown")

    asyncio.create_task(cancel_soon())
    result = await FlowExecutor(registry, settings=settings).run(graph, cancel_token=token)

    assert result.results["W"].error == "cancelled: shutdown"


@pytest.mark.asyncio
async def test_already_cancelled_token_runs_nothing(registry, recorder, settings):
    token = CancellationToken()
    token.cancel("before start")

    result = await FlowExecutor(registry, settings=settings).run(
        _graph(["a", "b"], [("a", "b")]), cancel_token=token
    )

    assert recorder.log == []
    assert result.skipped_nodes == ["a", "b"]


@pytest.mark.asyncio
async def test_aliases_and_run_inputs(registry, settings):
    graph = _graph(
        [
            _node("writer", text="draft about {{topic}}", outputVariable="draft"),
            _node("editor", text="edit: {{draft}}"),
        ],
        [("writer", "editor")],
    )

    result = await FlowExecutor(registry, settings=settings).run(graph, inputs={"topic": "tides"})

    assert result.results["editor"].output == "edit: draft about tides"
    assert result.outputs() == {"writer": "draft about tides", "editor": "edit: draft about tides"}


@pytest.mark.asyncio
async def test_webhook_payload_seeds_trigger_node(registry, settings):
    graph = _graph(
        [_node("hook", node_type="webhook-in"), _node("use", text="order {{hook.order.id}}")],
        [("hook", "use")],
    )

    result = await FlowExecutor(registry, settings=settings).run(
        graph, initial_outputs={"hook": {"order": {"id": 7}}}
    )

    assert result.results["hook"].metadata["trigger"] == "webhook"
    assert result.results["use"].output == "order 7"


@pytest.mark.asyncio
async def test_events_and_unresolved_warnings(registry, settings):
    bus = EventBus()
    graph = _graph([_node("a", text="{{missing}}")], [])

    result = await FlowExecutor(registry, event_bus=bus, settings=settings).run(graph, run_id="r-1")

    assert result.results["a"].output == "{{missing}}"
    assert any("missing" in w for w in result.results["a"].warnings)

    types = [e.type for e in reversed(bus.get_history(run_id="r-1"))]
    assert types[0] == EventType.RUN_STARTED
    assert types[-1] == EventType.RUN_COMPLETED
    assert EventType.NODE_STARTED in types
    assert EventType.NODE_COMPLETED in types
    unresolved = bus.get_history(event_type=EventType.DEPENDENCY_UNRESOLVED)
    assert unresolved[0].data["token"] == "missing"
    assert unresolved[0].node_id == "a"


@pytest.mark.asyncio
async def test_result_is_read_only_after_run(registry, settings):
    result = await FlowExecutor(registry, settings=settings).run(_graph(["a"], []))

    with pytest.raises(TypeError):
        result.results["a"] = None
    assert result.to_dict()["results"]["a"]["status"] == "success"
