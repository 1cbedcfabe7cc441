"""
Webhook HTTP Server - Starts flow runs from inbound HTTP requests.

Uses aiohttp for a lightweight embedded server that runs within the
existing asyncio loop. Each route belongs to a webhook-in node of a flow;
an accepted request publishes WEBHOOK_RECEIVED and starts a run with the
payload as that node's initial output.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from flowengine.graph.errors import ConfigurationError
from flowengine.graph.executor import FlowExecutor, FlowRunResult
from flowengine.graph.flow import FlowGraph
from flowengine.nodes.webhook_in import WebhookInConfig
from flowengine.runtime.event_bus import EventBus

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("X-Webhook-Signature", "X-Hub-Signature-256")
RATE_WINDOW_SECONDS = 60.0
MAX_COMPLETED_RUNS = 100


@dataclass
class WebhookRoute:
    """An inbound endpoint derived from a webhook-in node."""

    flow_id: str
    path: str
    node_id: str | None = None
    methods: list[str] = field(default_factory=lambda: ["POST"])
    secret: str | None = None  # For HMAC-SHA256 signature verification
    require_signature: bool = False
    max_requests_per_minute: int = 60
    allowed_ips: list[str] = field(default_factory=list)
    enabled: bool = True


@dataclass
class WebhookServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080


# Starts a run for an accepted request; returns the run id
TriggerHandler = Callable[[WebhookRoute, Any], Awaitable[str | None]]


def sign_payload(secret: str, body: bytes) -> str:
    """Signature header value for ``body``: ``sha256=<hex digest>``."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class WebhookServer:
    """
    Embedded HTTP server for webhook triggers.

    Request checks, in order: route exists (404), enabled and caller IP
    allowed (403), under the per-minute ceiling (429), signature valid (401).

    Lifecycle:
        server = WebhookServer(event_bus, config, on_trigger=handler)
        server.add_route(WebhookRoute(...))
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: WebhookServerConfig | None = None,
        on_trigger: TriggerHandler | None = None,
    ):
        self._event_bus = event_bus
        self._config = config or WebhookServerConfig()
        self._on_trigger = on_trigger
        self._routes: dict[str, WebhookRoute] = {}  # path -> route
        self._hits: dict[str, deque[float]] = {}
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def add_route(self, route: WebhookRoute) -> None:
        self._routes[route.path] = route

    @property
    def routes(self) -> list[WebhookRoute]:
        return list(self._routes.values())

    async def start(self) -> None:
        """Start the HTTP server. No-op if no routes registered."""
        if not self._routes:
            logger.debug("No webhook routes registered, skipping server start")
            return

        self._app = web.Application()
        for path, route in self._routes.items():
            for method in route.methods:
                self._app.router.add_route(method, path, self._handle_request)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(
            f"Webhook server started on {self._config.host}:{self._config.port} "
            f"with {len(self._routes)} route(s)"
        )

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Webhook server stopped")

    async def _handle_request(self, request: web.Request) -> web.Response:
        route = self._routes.get(request.path)
        if route is None:
            return web.json_response({"error": "Not found"}, status=404)

        if not route.enabled:
            return web.json_response({"error": "Webhook disabled"}, status=403)

        if route.allowed_ips and request.remote not in route.allowed_ips:
            logger.warning(f"Rejected webhook from {request.remote} on {route.path}")
            return web.json_response({"error": "IP not allowed"}, status=403)

        try:
            body = await request.read()
        except Exception:
            return web.json_response({"error": "Failed to read request body"}, status=400)

        if route.secret or route.require_signature:
            if not route.secret or not self._verify_signature(request, body, route.secret):
                return web.json_response({"error": "Invalid signature"}, status=401)

        if not self._allow(route):
            return web.json_response({"error": "Rate limit exceeded"}, status=429)

        try:
            payload = json.loads(body) if body else {}
        except (json.JSONDecodeError, ValueError):
            payload = {"raw_body": body.decode("utf-8", errors="replace")}

        await self._event_bus.emit_webhook_received(
            flow_id=route.flow_id,
            path=route.path,
            method=request.method,
            headers=dict(request.headers),
            payload=payload,
            query_params=dict(request.query),
        )

        run_id = await self._on_trigger(route, payload) if self._on_trigger else None
        return web.json_response({"status": "accepted", "run_id": run_id}, status=202)

    def _allow(self, route: WebhookRoute) -> bool:
        """Sliding 60 s window per route."""
        now = time.monotonic()
        hits = self._hits.setdefault(route.path, deque())
        while hits and now - hits[0] >= RATE_WINDOW_SECONDS:
            hits.popleft()
        if len(hits) >= route.max_requests_per_minute:
            return False
        hits.append(now)
        return True

    @staticmethod
    def _verify_signature(request: web.Request, body: bytes, secret: str) -> bool:
        for header in SIGNATURE_HEADERS:
            signature = request.headers.get(header, "")
            if signature:
                return hmac.compare_digest(signature, sign_payload(secret, body))
        return False

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None


class FlowWebhookTrigger:
    """
    Connects the webhook-in nodes of registered flows to background runs.

    Example:
        trigger = FlowWebhookTrigger(executor, event_bus, WebhookServerConfig(port=8080))
        trigger.register(graph)
        await trigger.server.start()
    """

    def __init__(
        self,
        executor: FlowExecutor,
        event_bus: EventBus,
        config: WebhookServerConfig | None = None,
        max_completed: int = MAX_COMPLETED_RUNS,
    ):
        self.executor = executor
        self.max_completed = max(1, max_completed)
        self.server = WebhookServer(event_bus, config, on_trigger=self._start_run)
        self._flows: dict[str, tuple[FlowGraph, dict[str, Any]]] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        # newest last; oldest results are dropped past max_completed
        self.completed: OrderedDict[str, FlowRunResult] = OrderedDict()

    @staticmethod
    def route_path(graph: FlowGraph, config: WebhookInConfig) -> str:
        return f"/api/webhooks/{config.custom_path or graph.id}/trigger"

    def register(self, graph: FlowGraph, inputs: dict[str, Any] | None = None) -> list[WebhookRoute]:
        """Add one route per webhook-in node of ``graph``."""
        self._flows[graph.id] = (graph, dict(inputs or {}))
        taken = {route.path for route in self.server.routes}
        added = []
        for node in graph.nodes_of_type("webhook-in"):
            config = WebhookInConfig.model_validate(node.data)
            path = self.route_path(graph, config)
            if path in taken:
                raise ConfigurationError(f"Webhook path '{path}' is already registered")
            route = WebhookRoute(
                flow_id=graph.id,
                path=path,
                node_id=node.id,
                secret=config.webhook_secret,
                require_signature=config.require_signature,
                max_requests_per_minute=config.max_requests_per_minute,
                allowed_ips=list(config.allowed_ips),
                enabled=config.is_enabled and not node.bypassed,
            )
            self.server.add_route(route)
            taken.add(path)
            added.append(route)
            logger.info(f"🔗 Webhook {path} → flow '{graph.id}' node '{node.id}'")
        return added

    async def _start_run(self, route: WebhookRoute, payload: Any) -> str:
        graph, inputs = self._flows[route.flow_id]
        run_id = uuid.uuid4().hex
        task = asyncio.create_task(
            self.executor.run(
                graph,
                inputs=inputs,
                initial_outputs={route.node_id: payload} if route.node_id else None,
                run_id=run_id,
            )
        )
        self._tasks[run_id] = task
        task.add_done_callback(lambda t, rid=run_id: self._finished(rid, t))
        return run_id

    def _finished(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.error(f"Webhook-triggered run {run_id[:8]} failed: {task.exception()}")
            return
        self.completed[run_id] = task.result()
        while len(self.completed) > self.max_completed:
            self.completed.popitem(last=False)

    async def wait_idle(self) -> None:
        """Wait for every in-flight triggered run to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
