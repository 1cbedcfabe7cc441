"""Graph structures, dependency resolution, and the flow executor."""

from flowengine.graph.cancellation import CancellationToken
from flowengine.graph.errors import (
    CancellationError,
    ConfigurationError,
    DependencyUnresolved,
    ExecutorFailure,
    FlowEngineError,
    GraphCycleError,
)
from flowengine.graph.flow import EdgeSpec, FlowGraph, NodeSpec
from flowengine.graph.resolver import ExecutionPlan, resolve_execution_plan, topological_order
from flowengine.graph.results import (
    AgentStep,
    ExecutionResult,
    ExecutionResultStore,
    NodeMetrics,
    NodeStatus,
    StepKind,
    TokenUsage,
    ToolCall,
)
from flowengine.graph.variables import (
    VariableResolver,
    VariableScope,
    extract_variables,
    resolve_variables,
)
from flowengine.graph.executor import FlowExecutor, FlowRunResult

__all__ = [
    # Structure
    "FlowGraph",
    "NodeSpec",
    "EdgeSpec",
    "ExecutionPlan",
    "resolve_execution_plan",
    "topological_order",
    # Results
    "NodeStatus",
    "StepKind",
    "ExecutionResult",
    "ExecutionResultStore",
    "AgentStep",
    "ToolCall",
    "TokenUsage",
    "NodeMetrics",
    # Variables
    "VariableResolver",
    "VariableScope",
    "extract_variables",
    "resolve_variables",
    # Execution
    "FlowExecutor",
    "FlowRunResult",
    "CancellationToken",
    # Errors
    "FlowEngineError",
    "ConfigurationError",
    "DependencyUnresolved",
    "ExecutorFailure",
    "GraphCycleError",
    "CancellationError",
]
