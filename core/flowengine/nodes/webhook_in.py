"""Webhook-in node: emits the payload an inbound request delivered."""

from pydantic import Field

from flowengine.graph.results import ExecutionResult
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor


class WebhookInConfig(NodeConfig):
    """Trigger descriptor read by the inbound listener (see runtime.webhook_server)."""

    webhook_secret: str | None = None
    custom_path: str | None = None
    is_enabled: bool = True
    max_requests_per_minute: int = Field(default=60, ge=1)
    allowed_ips: list[str] = Field(default_factory=list, alias="allowedIPs")
    require_signature: bool = False


class WebhookInExecutor(NodeExecutor):
    """
    Not a side-effecting step: the listener starts the run and seeds this
    node's initial output with the request payload. Manual runs without a
    payload fall back to the run's ``input`` variable, then to ``{}``.
    """

    config_model = WebhookInConfig

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        payload = ctx.initial_output
        source = "webhook"
        if payload is None:
            payload = ctx.variables.get("input", {})
            source = "manual"
        structured = payload if isinstance(payload, dict | list) else None
        return ctx.success(payload, structured=structured, metadata={"trigger": source})
