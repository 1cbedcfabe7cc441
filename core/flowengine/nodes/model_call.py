"""Model-call executor: one prompt, one reply, optional structured output."""

import logging
from typing import Any, Literal

from flowengine.graph.errors import ConfigurationError, ExecutorFailure
from flowengine.graph.flow import NodeSpec
from flowengine.graph.results import ExecutionResult, NodeMetrics
from flowengine.graph.structured_output import (
    fields_to_outline,
    fields_to_schema,
    flatten_structured,
    load_schema,
    parse_structured_text,
    render_flattened,
    schema_leaf_paths,
)
from flowengine.llm.provider import ModelProvider, ModelResponse, SamplingParams
from flowengine.nodes.base import NodeConfig, NodeContext, NodeExecutor

logger = logging.getLogger(__name__)

# Node type tags that name their provider
PROVIDER_TAGS = ("openai", "anthropic", "gemini", "perplexity")


class ModelCallConfig(NodeConfig):
    provider: str | None = None
    model: str | None = None
    system_prompt: str = ""
    user_prompt: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    output_format: Literal["text", "json", "csv"] = "text"
    json_schema: dict[str, Any] | str | None = None
    csv_fields: str | None = None


def model_identifier(
    node_type: str, provider: str | None, model: str | None, default_model: str | None
) -> str:
    """``provider/model``; provider comes from the config, else the node type tag."""
    if not model:
        if not default_model:
            raise ConfigurationError("No model configured")
        return default_model
    if "/" in model and not provider:
        return model
    provider = provider or (node_type if node_type in PROVIDER_TAGS else None)
    return f"{provider}/{model}" if provider else model


class ModelCallExecutor(NodeExecutor):
    """
    Sends resolved prompts to the model provider.

    Output formats:
    - text: the reply text
    - json: the parsed object (validated against ``jsonSchema`` when given)
    - csv:  JSON requested against a schema built from ``csvFields``; the
            result exposes the object, the per-field view and the flattened
            ``"field: value, ..."`` projection
    """

    config_model = ModelCallConfig

    def __init__(self, provider: ModelProvider):
        self.provider = provider

    def check(self, config: ModelCallConfig, node: NodeSpec) -> list[str]:
        errors = []
        if not config.user_prompt.strip():
            errors.append("userPrompt is required")
        if config.output_format == "csv" and not (config.csv_fields or "").strip():
            errors.append("csvFields is required for CSV output")
        if config.output_format == "json" and config.json_schema:
            try:
                load_schema(config.json_schema)
            except ValueError as e:
                errors.append(f"jsonSchema is not valid JSON: {e}")
        return errors

    async def execute(self, ctx: NodeContext) -> ExecutionResult:
        config: ModelCallConfig = self.parse_config(ctx.node)
        model = model_identifier(ctx.node.type, config.provider, config.model, ctx.default_model)
        sampling = SamplingParams(temperature=config.temperature, max_tokens=config.max_tokens)

        system_prompt = ctx.resolve(config.system_prompt)
        user_prompt = ctx.resolve(config.user_prompt)

        schema: dict[str, Any] | None = None
        if config.output_format == "csv":
            schema = fields_to_schema(config.csv_fields or "")
            system_prompt = _with_field_outline(system_prompt, config.csv_fields or "")
        elif config.output_format == "json" and config.json_schema:
            try:
                schema = load_schema(config.json_schema) or None
            except ValueError as e:
                raise ConfigurationError(f"Invalid jsonSchema: {e}") from e

        logger.info(f"   → {model} ({config.output_format})")
        ctx.cancel_token.raise_if_cancelled()
        try:
            response = await self.provider.send(
                system_prompt,
                user_prompt,
                model,
                sampling=sampling,
                schema=schema,
                json_mode=config.output_format != "text",
            )
        except Exception as e:
            raise ExecutorFailure(f"Model call failed: {e}") from e

        metrics = NodeMetrics(
            model=response.model or model,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost_usd=response.cost_usd,
        )

        if config.output_format == "text":
            return ctx.success(response.text, metrics=metrics)

        structured = _structured_reply(response)
        if config.output_format == "json":
            fields = flatten_structured(structured, schema) if isinstance(structured, dict) else None
            return ctx.success(structured, structured=structured, fields=fields, metrics=metrics)

        if not isinstance(structured, dict):
            raise ExecutorFailure("CSV output expects a JSON object reply")
        fields = flatten_structured(structured, schema)
        missing = [p for p in schema_leaf_paths(schema or {}) if not fields.get(p)]
        result = ctx.success(
            structured,
            structured=structured,
            fields=fields,
            flattened=render_flattened(fields),
            metrics=metrics,
        )
        if missing:
            result.warnings.append(f"Reply left fields empty: {', '.join(missing)}")
        return result


def _structured_reply(response: ModelResponse) -> Any:
    if response.structured is not None:
        return response.structured
    try:
        return parse_structured_text(response.text)
    except ValueError as e:
        raise ExecutorFailure(f"Model reply is not valid JSON: {e}") from e


def _with_field_outline(system_prompt: str, fields: str) -> str:
    outline = fields_to_outline(fields)
    instruction = (
        "Respond with a single JSON object containing exactly these fields "
        "(nested headings are nested objects):\n\n" + outline
    )
    return f"{system_prompt}\n\n{instruction}" if system_prompt else instruction
