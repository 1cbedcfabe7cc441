"""Error taxonomy for flow execution.

Only graph-level faults (an invalid graph or a cycle) escape a run.
Everything a single node does wrong is recorded on that node's
ExecutionResult instead.
"""


class FlowEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(FlowEngineError):
    """Malformed graph or node configuration, detected before dispatch."""


class DependencyUnresolved(FlowEngineError):
    """A referenced variable was not available when the host node ran.

    Soft: the resolver leaves the token in place and records a warning,
    it never raises this during a run.
    """

    def __init__(self, token: str, node_id: str | None = None, reason: str = ""):
        self.token = token
        self.node_id = node_id
        self.reason = reason
        message = f"Unresolved variable '{{{{{token}}}}}'"
        if node_id:
            message += f" in node '{node_id}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ExecutorFailure(FlowEngineError):
    """A node's own external call failed (after any retries)."""

    def __init__(self, message: str, attempts: int = 1, agent_steps: list | None = None):
        self.attempts = attempts
        self.agent_steps = list(agent_steps or [])
        super().__init__(message)


class GraphCycleError(FlowEngineError):
    """The graph contains a cycle. Fatal, raised before any node starts."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = list(node_ids)
        super().__init__(f"Cycle detected in flow graph involving nodes: {', '.join(node_ids)}")


class CancellationError(FlowEngineError):
    """The run was cancelled."""

    def __init__(self, reason: str = "Run cancelled"):
        self.reason = reason
        super().__init__(reason)
