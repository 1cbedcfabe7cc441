"""
Flow execution engine: runs node graphs authored in a visual editor.

Nodes execute in dependency order with bounded concurrency, pass results
to each other through ``{{...}}`` variable tokens, and report progress on
an event bus.
"""

from flowengine.graph import (
    CancellationToken,
    ConfigurationError,
    ExecutionResult,
    FlowExecutor,
    FlowGraph,
    FlowRunResult,
    GraphCycleError,
    NodeStatus,
)
from flowengine.config import RunSettings
from flowengine.nodes import default_registry
from flowengine.runtime import EventBus, EventType

__version__ = "0.1.0"

__all__ = [
    "FlowGraph",
    "FlowExecutor",
    "FlowRunResult",
    "ExecutionResult",
    "NodeStatus",
    "CancellationToken",
    "ConfigurationError",
    "GraphCycleError",
    "RunSettings",
    "EventBus",
    "EventType",
    "default_registry",
]
