"""Runtime services: event bus and inbound webhooks."""

from flowengine.runtime.event_bus import EventBus, EventType, FlowEvent, Subscription

__all__ = ["EventBus", "EventType", "FlowEvent", "Subscription"]
