"""
Execution results and the per-run result store.

Every node in a run gets exactly one ExecutionResult. It is created
``pending`` when the run starts, may move to ``running``, and is then
written exactly once with a terminal status. After the run the store is
frozen and handed to consumers (result viewers, save indicators, exports)
as a read-only mapping.
"""

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from flowengine.graph.errors import FlowEngineError


class NodeStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCESS, NodeStatus.ERROR, NodeStatus.SKIPPED)


class StepKind(StrEnum):
    REASONING = "reasoning"
    TOOL_CALL = "tool-call"
    FINAL_ANSWER = "final-answer"


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass
class ToolCall:
    """One tool invocation requested by the model during an agent step."""

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str = ""
    result: Any = None
    error: str | None = None


@dataclass
class AgentStep:
    """One iteration of the agent reasoning loop."""

    step_number: int
    kind: StepKind
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning: str = ""
    output: str | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "kind": self.kind.value,
            "tool_calls": [
                {
                    "tool_name": tc.tool_name,
                    "tool_use_id": tc.tool_use_id,
                    "arguments": tc.arguments,
                    "result": tc.result,
                    "error": tc.error,
                }
                for tc in self.tool_calls
            ],
            "reasoning": self.reasoning,
            "output": self.output,
            "token_usage": {
                "input_tokens": self.token_usage.input_tokens,
                "output_tokens": self.token_usage.output_tokens,
                "total_tokens": self.token_usage.total_tokens,
            },
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class NodeMetrics:
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float | None = None
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def to_text(value: Any) -> str:
    """String projection of an output value used for substitution."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def path_segments(path: str) -> list[str]:
    return [s for s in path.replace("/", ".").split(".") if s]


def walk_path(value: Any, path: str) -> tuple[bool, Any]:
    """
    Follow a dotted or slashed path through nested dicts and lists.
    List elements are addressed by index. Returns (found, value); an
    empty path finds ``value`` itself.
    """
    current = value
    for segment in path_segments(path):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            return False, None
    return True, current


@dataclass
class ExecutionResult:
    """Outcome of one node in one run."""

    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    structured: Any = None  # object view, when the output is object-like
    fields: dict[str, str] | None = None  # slash path -> value, when a schema is declared
    flattened: str | None = None  # "path: value, ..." projection (CSV mode)
    metrics: NodeMetrics = field(default_factory=NodeMetrics)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    agent_steps: list[AgentStep] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.status == NodeStatus.SUCCESS

    def as_text(self) -> str:
        if self.flattened is not None:
            return self.flattened
        return to_text(self.output)

    def field_value(self, path: str) -> tuple[bool, Any]:
        """
        Look up a field in the structured view.

        ``path`` may use dots or slashes (``name.first`` / ``name/first``);
        list elements are addressed by index. Returns (found, value).
        """
        segments = path_segments(path)
        if not segments:
            return False, None

        view = self.structured if self.structured is not None else self.output
        found, value = walk_path(view, path)
        if found:
            return True, value

        if self.fields:
            key = "/".join(segments)
            if key in self.fields:
                return True, self.fields[key]
        return False, None

    def to_dict(self) -> dict[str, Any]:
        """Serializable view for result viewers and exports."""
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "output": self.output,
            "structured": self.structured,
            "fields": self.fields,
            "flattened": self.flattened,
            "metrics": {
                "model": self.metrics.model,
                "input_tokens": self.metrics.input_tokens,
                "output_tokens": self.metrics.output_tokens,
                "total_tokens": self.metrics.total_tokens,
                "cost_usd": self.metrics.cost_usd,
                "duration_ms": self.metrics.duration_ms,
            },
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "error": self.error,
            "warnings": list(self.warnings),
            "metadata": self.metadata,
            "agent_steps": [step.to_dict() for step in self.agent_steps],
        }


class ExecutionResultStore(Mapping[str, ExecutionResult]):
    """
    Run-scoped map from node id to ExecutionResult.

    The only shared mutable structure in a run. All writes happen on the
    event loop thread, so each write is atomic with respect to other nodes.
    Each node may be written to a terminal state exactly once.
    """

    def __init__(self, node_ids: list[str], run_id: str = ""):
        self.run_id = run_id
        self._results: dict[str, ExecutionResult] = {
            node_id: ExecutionResult(node_id=node_id) for node_id in node_ids
        }
        self._frozen = False

    # Mapping interface (read-only)
    def __getitem__(self, node_id: str) -> ExecutionResult:
        return self._results[node_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    def status(self, node_id: str) -> NodeStatus:
        return self._results[node_id].status

    def mark_running(self, node_id: str) -> ExecutionResult:
        current = self._checked(node_id)
        if current.status != NodeStatus.PENDING:
            raise FlowEngineError(f"Node '{node_id}' cannot start from status '{current.status}'")
        current.status = NodeStatus.RUNNING
        current.started_at = datetime.now(UTC)
        return current

    def record(self, result: ExecutionResult) -> ExecutionResult:
        """Write a node's terminal result."""
        current = self._checked(result.node_id)
        if not result.status.is_terminal:
            raise FlowEngineError(
                f"Result for node '{result.node_id}' must be terminal, got '{result.status}'"
            )
        if current.is_terminal:
            raise FlowEngineError(f"Node '{result.node_id}' already has a terminal result")

        result.started_at = result.started_at or current.started_at
        result.ended_at = result.ended_at or datetime.now(UTC)
        result.warnings = current.warnings + [w for w in result.warnings if w not in current.warnings]
        if result.started_at and not result.metrics.duration_ms:
            delta = result.ended_at - result.started_at
            result.metrics.duration_ms = int(delta.total_seconds() * 1000)
        self._results[result.node_id] = result
        return result

    def skip(self, node_id: str, reason: str) -> ExecutionResult:
        return self.record(
            ExecutionResult(node_id=node_id, status=NodeStatus.SKIPPED, error=reason)
        )

    def add_warning(self, node_id: str, warning: str) -> None:
        current = self._checked(node_id)
        if warning not in current.warnings:
            current.warnings.append(warning)

    def freeze(self) -> None:
        self._frozen = True

    def view(self) -> Mapping[str, ExecutionResult]:
        return MappingProxyType(self._results)

    @property
    def has_errors(self) -> bool:
        return any(r.status == NodeStatus.ERROR for r in self._results.values())

    def with_status(self, status: NodeStatus) -> list[str]:
        return [node_id for node_id, r in self._results.items() if r.status == status]

    def _checked(self, node_id: str) -> ExecutionResult:
        if self._frozen:
            raise FlowEngineError("Result store is frozen; the run has ended")
        if node_id not in self._results:
            raise FlowEngineError(f"Unknown node: '{node_id}'")
        return self._results[node_id]
