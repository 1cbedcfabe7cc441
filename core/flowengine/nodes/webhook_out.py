"""Webhook-out executor: outbound HTTP call with retry."""

import asyncio
import logging
from typing import Literal

from pydantic import Field

from flowengine.graph.errors import CancellationError, ConfigurationError, ExecutorFailure
from flowengine.graph.flow import NodeSpec
from flowengine.graph.results import ExecutionResult
from flowengine.integrations.http import BODY_METHODS, HttpClient, HttpResponse, build_auth_headers
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor

logger = logging.getLogger(__name__)


class WebhookOutConfig(NodeConfig):
    target_url: str = ""
    http_method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body_template: str = ""
    auth_type: Literal["none", "bearer", "api-key"] = "none"
    auth_token: str | None = None
    credential_id: str | None = None
    retry_count: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    timeout_ms: int = Field(default=30000, gt=0)


def is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


class WebhookOutExecutor(NodeExecutor):
    """
    Transport errors, timeouts, 429 and 5xx responses are retried up to
    ``retryCount`` times with a fixed ``retryDelayMs`` pause. Any other
    non-2xx response fails the node immediately.
    """

    config_model = WebhookOutConfig

    def __init__(self, http: HttpClient):
        self.http = http

    def check(self, config: WebhookOutConfig, node: NodeSpec) -> list[str]:
        errors = []
        if not config.target_url.strip():
            errors.append("targetUrl is required")
        if config.auth_type != "none" and not (config.auth_token or config.credential_id):
            errors.append(f"authType '{config.auth_type}' needs authToken or credentialId")
        return errors

    def node_timeout(self, node: NodeSpec) -> float | None:
        """Budget for every attempt plus the pauses between them."""
        config: WebhookOutConfig = self.parse_config(node)
        attempts = config.retry_count + 1
        total_ms = config.timeout_ms * attempts + config.retry_delay_ms * config.retry_count
        return total_ms / 1000

    def _credential(self, config: WebhookOutConfig, ctx: NodeContext) -> str | None:
        if config.auth_type == "none":
            return None
        if config.auth_token:
            return ctx.resolve(config.auth_token)
        credential = ctx.credentials.get(config.credential_id or "")
        if not credential:
            raise ConfigurationError(f"Credential '{config.credential_id}' is not available")
        return credential

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        config: WebhookOutConfig = self.parse_config(ctx.node)
        url = ctx.resolve(config.target_url)
        method = config.http_method

        headers: dict[str, str] = dict(ctx.resolve_value(config.headers))
        headers.update(build_auth_headers(config.auth_type, self._credential(config, ctx)))
        body: str | None = None
        if method in BODY_METHODS and config.body_template:
            body = ctx.resolve(config.body_template)
            if not any(name.lower() == "content-type" for name in headers):
                headers["Content-Type"] = "application/json"

        max_attempts = config.retry_count + 1
        last_error = ""
        for attempt in range(1, max_attempts + 1):
            ctx.cancel_token.raise_if_cancelled()
            try:
                response = await self.http.request(
                    url, method=method, headers=headers, body=body, timeout_ms=config.timeout_ms
                )
            except (asyncio.CancelledError, CancellationError):
                raise
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            else:
                if response.ok:
                    return self._result(ctx, response, attempt)
                last_error = f"HTTP {response.status}: {response.body[:200]}"
                if not is_retryable_status(response.status):
                    raise ExecutorFailure(last_error, attempts=attempt)

            if attempt < max_attempts:
                logger.warning(
                    f"   ↻ {method} {url} failed ({last_error}), "
                    f"retry {attempt}/{config.retry_count} in {config.retry_delay_ms}ms"
                )
                if ctx.event_bus:
                    await ctx.event_bus.emit_node_retry(
                        ctx.flow_id, ctx.run_id, ctx.node_id, attempt, max_attempts, last_error
                    )
                await ctx.cancel_token.sleep(config.retry_delay_ms / 1000)

        raise ExecutorFailure(
            f"{method} {url} failed after {max_attempts} attempt(s): {last_error}",
            attempts=max_attempts,
        )

    @staticmethod
    def _result(ctx: NodeContext, response: HttpResponse, attempts: int) -> ExecutionResult:
        parsed = response.json()
        structured = parsed if isinstance(parsed, dict | list) else None
        return ctx.success(
            structured if structured is not None else response.body,
            structured=structured,
            metadata={
                "status": response.status,
                "attempts": attempts,
                "response_headers": response.headers,
            },
        )
