"""
Command-line interface for the flow engine.

Usage:
    flowengine run flows/summarize.vflow --input '{"topic": "tides"}'
    flowengine run flows/summarize.vflow --mock-response 'stub reply'
    flowengine validate flows/summarize.vflow
    flowengine scan flows/summarize.vflow
    flowengine serve flows/intake.vflow flows/triage.vflow --port 8080
    flowengine fields-to-schema 'id,name/first,name/last'
    flowengine schema-to-fields schema.json
"""

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from pathlib import Path

from flowengine.config import RunSettings, WebhookSettings, get_api_key
from flowengine.export.document import FlowExport, load_flow_export
from flowengine.export.secrets import scan_for_secrets
from flowengine.graph.cancellation import CancellationToken
from flowengine.graph.errors import ConfigurationError, GraphCycleError
from flowengine.graph.executor import FlowExecutor
from flowengine.graph.resolver import resolve_execution_plan
from flowengine.graph.structured_output import fields_to_schema, load_schema, schema_to_fields
from flowengine.llm.litellm import LiteLLMProvider
from flowengine.llm.mock import MockLLMProvider
from flowengine.llm.provider import ModelProvider
from flowengine.nodes import default_registry
from flowengine.observability.logging import configure_logging
from flowengine.runtime.event_bus import EventBus


def _load(path: str) -> FlowExport:
    return load_flow_export(Path(path))


def _provider(args: argparse.Namespace) -> ModelProvider:
    if getattr(args, "mock_response", None) is not None:
        return MockLLMProvider(default_text=args.mock_response)
    return LiteLLMProvider(api_key=get_api_key())


def _parse_inputs(raw: str | None) -> dict:
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("--input must be a JSON object")
    return value


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> int:
    try:
        export = _load(args.flow)
        inputs = {**export.default_inputs(), **_parse_inputs(args.input)}
    except (ConfigurationError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    missing = export.missing_inputs(inputs)
    if missing:
        print(f"Error: missing required input(s): {', '.join(missing)}", file=sys.stderr)
        return 2

    settings = export.run_settings(RunSettings())
    executor = FlowExecutor(
        registry=default_registry(_provider(args)),
        event_bus=EventBus(),
        settings=settings,
    )

    async def _run():
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
        return await executor.run(export.to_graph(), inputs=inputs, cancel_token=token)

    try:
        result = asyncio.run(_run())
    except (ConfigurationError, GraphCycleError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        for node_id in result.order:
            node_result = result.results[node_id]
            print(f"[{node_result.status}] {node_id}")
            text = node_result.error or node_result.as_text()
            if text:
                print(f"    {text[:500]}")
            for warning in node_result.warnings:
                print(f"    ⚠ {warning}")
        if result.cancelled:
            print(f"Run cancelled: {result.cancel_reason}")
    return 1 if result.has_errors or result.cancelled else 0


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        export = _load(args.flow)
        graph = export.to_graph()
    except ConfigurationError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1

    problems = list(graph.validate())
    if not problems:
        try:
            plan = resolve_execution_plan(graph)
        except (ConfigurationError, GraphCycleError) as e:
            problems.append(str(e))
        else:
            registry = default_registry(MockLLMProvider())
            for node in graph.nodes:
                if node.bypassed:
                    continue
                try:
                    executor = registry.get(node.type)
                except ConfigurationError as e:
                    problems.append(str(e))
                    continue
                problems.extend(f"{node.id}: {p}" for p in executor.validate_config(node))

    if problems:
        for problem in problems:
            print(f"✗ {problem}")
        return 1
    print(f"✓ {graph.name or graph.id}: {len(graph.nodes)} node(s), order {' → '.join(plan.order)}")
    return 0


def cmd_scan(args: argparse.Namespace) -> int:
    try:
        export = _load(args.flow)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    matches = scan_for_secrets(export)
    for match in matches:
        print(f"⚠ {match.type} in {match.location}: {match.redacted}")
    if not matches:
        print("✓ No secrets found")
    return 1 if matches else 0


def cmd_serve(args: argparse.Namespace) -> int:
    # Imported here so the other commands don't load aiohttp
    from flowengine.runtime.webhook_server import FlowWebhookTrigger, WebhookServerConfig

    defaults = WebhookSettings()
    config = WebhookServerConfig(host=args.host or defaults.host, port=args.port or defaults.port)
    event_bus = EventBus()
    executor = FlowExecutor(registry=default_registry(_provider(args)), event_bus=event_bus)
    trigger = FlowWebhookTrigger(executor, event_bus, config)

    try:
        for path in args.flows:
            export = _load(path)
            trigger.register(export.to_graph(), inputs=export.default_inputs())
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if not trigger.server.routes:
        print("Error: no webhook-in nodes in the given flows", file=sys.stderr)
        return 2

    async def _serve():
        await trigger.server.start()
        for route in trigger.server.routes:
            print(f"🔗 {','.join(route.methods)} http://{config.host}:{config.port}{route.path}")
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, stop.set)
            loop.add_signal_handler(signal.SIGTERM, stop.set)
        try:
            await stop.wait()
        finally:
            await trigger.server.stop()
            await trigger.wait_idle()

    asyncio.run(_serve())
    return 0


def cmd_fields_to_schema(args: argparse.Namespace) -> int:
    print(json.dumps(fields_to_schema(args.fields), indent=2))
    return 0


def cmd_schema_to_fields(args: argparse.Namespace) -> int:
    source = args.schema
    if not source.lstrip().startswith("{"):
        source = Path(source).read_text(encoding="utf-8")
    try:
        print(schema_to_fields(load_schema(source)))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    return 0


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run a flow once")
    run_parser.add_argument("flow", help="Path to a flow export (.vflow / .json)")
    run_parser.add_argument("--input", "-i", help="Run inputs as a JSON object")
    run_parser.add_argument(
        "--mock-response",
        help="Answer every model call with this text instead of calling a provider",
    )
    run_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Check a flow without running it")
    validate_parser.add_argument("flow")
    validate_parser.set_defaults(func=cmd_validate)

    scan_parser = subparsers.add_parser("scan", help="Report hard-coded secrets in a flow export")
    scan_parser.add_argument("flow")
    scan_parser.set_defaults(func=cmd_scan)

    serve_parser = subparsers.add_parser("serve", help="Serve webhook triggers for flows")
    serve_parser.add_argument("flows", nargs="+")
    serve_parser.add_argument("--host")
    serve_parser.add_argument("--port", type=int)
    serve_parser.add_argument("--mock-response")
    serve_parser.set_defaults(func=cmd_serve)

    f2s_parser = subparsers.add_parser("fields-to-schema", help="Field list to JSON schema")
    f2s_parser.add_argument("fields", help="Comma-separated fields, '/' for nesting")
    f2s_parser.set_defaults(func=cmd_fields_to_schema)

    s2f_parser = subparsers.add_parser("schema-to-fields", help="JSON schema to field list")
    s2f_parser.add_argument("schema", help="Schema JSON text or a path to it")
    s2f_parser.set_defaults(func=cmd_schema_to_fields)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="Run node-graph flows exported from the flow editor",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level (default WARNING)")
    parser.add_argument("--log-format", default="auto", choices=["auto", "json", "human"])

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
