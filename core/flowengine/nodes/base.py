"""
Node executor contract.

Every node type is run by a NodeExecutor. The orchestrator builds a
NodeContext (resolved input, read-only results, a node-bound variable
resolver, the cancellation token) and awaits ``execute``. Executors return
an ExecutionResult; they raise only for failures the orchestrator should
record as the node's error:

- ConfigurationError: bad node configuration
- ExecutorFailure: the external call failed after retries
- CancellationError: the run was cancelled mid-node
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from flowengine.graph.cancellation import CancellationToken
from flowengine.graph.errors import ConfigurationError
from flowengine.graph.flow import NodeSpec
from flowengine.graph.results import ExecutionResult, NodeStatus
from flowengine.graph.variables import VariableResolver
from flowengine.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)


class NodeConfig(BaseModel):
    """Base for node configs; accepts the camelCase keys used in flow exports."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


@dataclass
class NodeContext:
    """Everything an executor may use while running one node."""

    node: NodeSpec
    resolver: VariableResolver
    results: Mapping[str, ExecutionResult]
    input_result: ExecutionResult | None = None  # first incoming edge's source
    variables: Mapping[str, Any] = field(default_factory=dict)
    credentials: Mapping[str, str] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    event_bus: EventBus | None = None
    flow_id: str = "flow"
    run_id: str = ""
    initial_output: Any = None  # supplied by an external trigger (webhook-in)
    default_model: str | None = None
    agent_max_steps: int = 10

    @property
    def node_id(self) -> str:
        return self.node.id

    @property
    def input_value(self) -> Any:
        return self.input_result.output if self.input_result is not None else None

    @property
    def input_text(self) -> str:
        return self.input_result.as_text() if self.input_result is not None else ""

    def resolve(self, text: str | None) -> str:
        return self.resolver.resolve(text)

    def resolve_value(self, value: Any) -> Any:
        return self.resolver.resolve_value(value)

    def success(self, output: Any, **kwargs: Any) -> ExecutionResult:
        return ExecutionResult(
            node_id=self.node.id, status=NodeStatus.SUCCESS, output=output, **kwargs
        )


class NodeExecutor(ABC):
    """Runs one category of node."""

    config_model: ClassVar[type[NodeConfig]] = NodeConfig

    def parse_config(self, node: NodeSpec) -> NodeConfig:
        try:
            return self.config_model.model_validate(node.data)
        except ValidationError as e:
            raise ConfigurationError(f"Node '{node.id}' has invalid configuration: {e}") from e

    def validate_config(self, node: NodeSpec) -> list[str]:
        """Configuration problems found before dispatch; empty means valid."""
        try:
            config = self.config_model.model_validate(node.data)
        except ValidationError as e:
            return [
                f"{'.'.join(str(p) for p in err['loc']) or 'data'}: {err['msg']}"
                for err in e.errors()
            ]
        return self.check(config, node)

    def check(self, config: NodeConfig, node: NodeSpec) -> list[str]:
        """Semantic checks beyond field types. Override per node type."""
        return []

    def node_timeout(self, node: NodeSpec) -> float | None:
        """Per-node timeout in seconds; None defers to the run settings."""
        return node.timeout_seconds

    @abstractmethod
    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        pass


class NodeRegistry:
    """Type tag -> executor."""

    def __init__(self):
        self._executors: dict[str, NodeExecutor] = {}

    def register(self, type_tags: str | list[str], executor: NodeExecutor) -> None:
        for tag in [type_tags] if isinstance(type_tags, str) else type_tags:
            self._executors[tag] = executor

    def get(self, type_tag: str) -> NodeExecutor:
        executor = self._executors.get(type_tag)
        if executor is None:
            raise ConfigurationError(f"No executor registered for node type '{type_tag}'")
        return executor

    def __contains__(self, type_tag: object) -> bool:
        return type_tag in self._executors

    def types(self) -> list[str]:
        return sorted(self._executors)
