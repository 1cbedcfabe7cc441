"""
Event Bus - Pub/sub for flow run lifecycle events.

Lets observers (UI bridges, loggers, tests) follow a run without the
orchestrator knowing about them:
- Run and node lifecycle
- Agent steps and tool calls
- Unresolved variable warnings
- Inbound webhook deliveries
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_CANCELLED = "run_cancelled"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"
    NODE_RETRY = "node_retry"
    DEPENDENCY_UNRESOLVED = "dependency_unresolved"

    # Agent mode
    AGENT_STEP_COMPLETED = "agent_step_completed"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"

    # External triggers
    WEBHOOK_RECEIVED = "webhook_received"

    CUSTOM = "custom"


@dataclass
class FlowEvent:
    """An event emitted during a flow run."""

    type: EventType
    flow_id: str
    run_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "flow_id": self.flow_id,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[FlowEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_flow: str | None = None
    filter_node: str | None = None
    filter_run: str | None = None


class EventBus:
    """
    Pub/sub event bus for flow runs.

    Handler failures are logged and never reach the publisher, so a broken
    observer cannot fail a node.

    Example:
        bus = EventBus()

        async def on_node_failed(event: FlowEvent):
            print(f"{event.node_id} failed: {event.data['error']}")

        bus.subscribe(event_types=[EventType.NODE_FAILED], handler=on_node_failed)
    """

    def __init__(self, max_history: int = 1000, max_concurrent_handlers: int = 10):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[FlowEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_flow: str | None = None,
        filter_node: str | None = None,
        filter_run: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_flow=filter_flow,
            filter_node=filter_node,
            filter_run=filter_run,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: FlowEvent) -> None:
        """Publish an event to all matching subscribers."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: FlowEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_flow and subscription.filter_flow != event.flow_id:
            return False
        if subscription.filter_node and subscription.filter_node != event.node_id:
            return False
        if subscription.filter_run and subscription.filter_run != event.run_id:
            return False
        return True

    async def _execute_handlers(self, event: FlowEvent, handlers: list[EventHandler]) -> None:
        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    # === RUN PUBLISHERS ===

    async def emit_run_started(
        self, flow_id: str, run_id: str, order: list[str], inputs: dict[str, Any] | None = None
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.RUN_STARTED,
                flow_id=flow_id,
                run_id=run_id,
                data={"order": list(order), "inputs": inputs or {}},
            )
        )

    async def emit_run_completed(
        self, flow_id: str, run_id: str, has_errors: bool, failed_nodes: list[str]
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.RUN_COMPLETED,
                flow_id=flow_id,
                run_id=run_id,
                data={"has_errors": has_errors, "failed_nodes": list(failed_nodes)},
            )
        )

    async def emit_run_cancelled(self, flow_id: str, run_id: str, reason: str) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.RUN_CANCELLED,
                flow_id=flow_id,
                run_id=run_id,
                data={"reason": reason},
            )
        )

    # === NODE PUBLISHERS ===

    async def emit_node_started(
        self, flow_id: str, run_id: str, node_id: str, node_type: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_STARTED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={"node_type": node_type},
            )
        )

    async def emit_node_completed(
        self, flow_id: str, run_id: str, node_id: str, output: Any, duration_ms: int | None
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_COMPLETED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={"output": output, "duration_ms": duration_ms},
            )
        )

    async def emit_node_failed(self, flow_id: str, run_id: str, node_id: str, error: str) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_FAILED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={"error": error},
            )
        )

    async def emit_node_skipped(self, flow_id: str, run_id: str, node_id: str, reason: str) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_SKIPPED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={"reason": reason},
            )
        )

    async def emit_node_retry(
        self,
        flow_id: str,
        run_id: str | None,
        node_id: str,
        attempt: int,
        max_attempts: int,
        error: str,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.NODE_RETRY,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={"attempt": attempt, "max_attempts": max_attempts, "error": error},
            )
        )

    async def emit_dependency_unresolved(
        self, flow_id: str, run_id: str, node_id: str, token: str, reason: str
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.DEPENDENCY_UNRESOLVED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={"token": token, "reason": reason},
            )
        )

    # === AGENT PUBLISHERS ===

    async def emit_agent_step_completed(
        self, flow_id: str, run_id: str | None, node_id: str | None, step: dict[str, Any]
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.AGENT_STEP_COMPLETED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={"step": step},
            )
        )

    async def emit_tool_call_started(
        self,
        flow_id: str,
        run_id: str | None,
        node_id: str | None,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any] | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.TOOL_CALL_STARTED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={
                    "tool_use_id": tool_use_id,
                    "tool_name": tool_name,
                    "tool_input": tool_input or {},
                },
            )
        )

    async def emit_tool_call_completed(
        self,
        flow_id: str,
        run_id: str | None,
        node_id: str | None,
        tool_use_id: str,
        tool_name: str,
        result: str = "",
        is_error: bool = False,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.TOOL_CALL_COMPLETED,
                flow_id=flow_id,
                run_id=run_id,
                node_id=node_id,
                data={
                    "tool_use_id": tool_use_id,
                    "tool_name": tool_name,
                    "result": result,
                    "is_error": is_error,
                },
            )
        )

    async def emit_webhook_received(
        self,
        flow_id: str,
        path: str,
        method: str,
        headers: dict[str, str],
        payload: dict[str, Any],
        query_params: dict[str, str] | None = None,
    ) -> None:
        await self.publish(
            FlowEvent(
                type=EventType.WEBHOOK_RECEIVED,
                flow_id=flow_id,
                data={
                    "path": path,
                    "method": method,
                    "headers": headers,
                    "payload": payload,
                    "query_params": query_params or {},
                },
            )
        )

    # === QUERY OPERATIONS ===

    def get_history(
        self,
        event_type: EventType | None = None,
        flow_id: str | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[FlowEvent]:
        """
        Get event history with optional filtering.

        Returns:
            List of matching events (most recent first)
        """
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if flow_id:
            events = [e for e in events if e.flow_id == flow_id]
        if run_id:
            events = [e for e in events if e.run_id == run_id]
        return events[:limit]

    def get_stats(self) -> dict:
        type_counts: dict[str, int] = {}
        for event in self._event_history:
            type_counts[event.type.value] = type_counts.get(event.type.value, 0) + 1
        return {
            "total_events": len(self._event_history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": type_counts,
        }

    async def wait_for(
        self,
        event_type: EventType,
        flow_id: str | None = None,
        node_id: str | None = None,
        run_id: str | None = None,
        timeout: float | None = None,
    ) -> FlowEvent | None:
        """Wait for a specific event. Returns None on timeout."""
        result: FlowEvent | None = None
        event_received = asyncio.Event()

        async def handler(event: FlowEvent) -> None:
            nonlocal result
            result = event
            event_received.set()

        sub_id = self.subscribe(
            event_types=[event_type],
            handler=handler,
            filter_flow=flow_id,
            filter_node=node_id,
            filter_run=run_id,
        )
        try:
            if timeout:
                try:
                    await asyncio.wait_for(event_received.wait(), timeout=timeout)
                except TimeoutError:
                    return None
            else:
                await event_received.wait()
            return result
        finally:
            self.unsubscribe(sub_id)
