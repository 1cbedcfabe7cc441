"""
Tests for the event bus: subscriptions, filtering, history.
"""

import asyncio

import pytest

from flowengine.runtime.event_bus import EventBus, EventType, FlowEvent


@pytest.mark.asyncio
async def test_subscribers_receive_matching_events_only():
    bus = EventBus()
    received = []

    async def handler(event: FlowEvent):
        received.append(event)

    bus.subscribe([EventType.NODE_FAILED], handler, filter_flow="f1")

    await bus.emit_node_failed("f1", "r1", "a", "boom")
    await bus.emit_node_failed("f2", "r2", "b", "other flow")
    await bus.emit_node_started("f1", "r1", "a", "llm")

    assert len(received) == 1
    assert received[0].node_id == "a"
    assert received[0].data == {"error": "boom"}


@pytest.mark.asyncio
async def test_failing_handler_does_not_reach_publisher():
    bus = EventBus()
    calls = []

    async def broken(event):
        raise RuntimeError("observer bug")

    async def healthy(event):
        calls.append(event.type)

    bus.subscribe([EventType.RUN_STARTED], broken)
    bus.subscribe([EventType.RUN_STARTED], healthy)

    await bus.emit_run_started("f", "r", ["a", "b"], {"x": 1})

    assert calls == [EventType.RUN_STARTED]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(event):
        received.append(event)

    sub_id = bus.subscribe([EventType.NODE_SKIPPED], handler)
    assert bus.unsubscribe(sub_id)
    assert not bus.unsubscribe(sub_id)

    await bus.emit_node_skipped("f", "r", "a", "cancelled: x")
    assert received == []


@pytest.mark.asyncio
async def test_history_filters_and_stats():
    bus = EventBus(max_history=3)

    for i in range(5):
        await bus.emit_node_started("f", f"r{i}", f"n{i}", "notes")

    history = bus.get_history()
    assert [e.run_id for e in history] == ["r4", "r3", "r2"]
    assert bus.get_history(run_id="r3")[0].node_id == "n3"
    assert bus.get_stats()["events_by_type"] == {"node_started": 3}


@pytest.mark.asyncio
async def test_wait_for_event():
    bus = EventBus()

    async def later():
        await asyncio.sleep(0.01)
        await bus.emit_run_cancelled("f", "r", "user stop")

    asyncio.create_task(later())
    event = await bus.wait_for(EventType.RUN_CANCELLED, flow_id="f", timeout=1)

    assert event is not None
    assert event.data["reason"] == "user stop"
    assert await bus.wait_for(EventType.RUN_CANCELLED, timeout=0.01) is None


def test_event_to_dict():
    event = FlowEvent(type=EventType.NODE_RETRY, flow_id="f", node_id="n", data={"attempt": 1})

    data = event.to_dict()

    assert data["type"] == "node_retry"
    assert data["data"] == {"attempt": 1}
