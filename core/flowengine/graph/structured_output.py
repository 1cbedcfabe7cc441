"""
Structured output helpers.

Converts between the flat field notation used for CSV output
(``"id, name/first, name/last"``) and the equivalent nested JSON schema:

    {
      "type": "object",
      "properties": {
        "id": {"type": "string"},
        "name": {
          "type": "object",
          "properties": {"first": {"type": "string"}, "last": {"type": "string"}}
        }
      }
    }

Also renders schemas as heading outlines for prompt documentation and
flattens parsed objects back into the field notation.
"""

import json
import re
from typing import Any

from flowengine.graph.results import to_text

_FENCE_PATTERN = re.compile(r"^```(?:json|JSON)?\s*$", re.MULTILINE)


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences the model may wrap JSON in."""
    return _FENCE_PATTERN.sub("", text.strip()).strip()


def parse_structured_text(text: str) -> Any:
    """Parse JSON text (optionally fenced). Raises ValueError on failure."""
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        raise ValueError("Empty structured output")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        # Models sometimes add prose around the object; try the outermost braces
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start : end + 1])
            except json.JSONDecodeError:
                pass
        raise ValueError(f"Invalid JSON: {e}") from e


def _split_fields(text: str) -> list[str]:
    return [f.strip() for f in (text or "").split(",") if f.strip()]


def load_schema(schema: dict[str, Any] | str | None) -> dict[str, Any]:
    """Accept a schema dict or JSON string. Raises ValueError if unparseable."""
    if schema is None:
        return {}
    if isinstance(schema, dict):
        return schema
    if not schema.strip():
        return {}
    parsed = parse_structured_text(schema)
    if not isinstance(parsed, dict):
        raise ValueError("Schema must be a JSON object")
    return parsed


def fields_to_schema(fields: str) -> dict[str, Any]:
    """Flat, slash-delimited field list -> nested object schema."""
    schema: dict[str, Any] = {"type": "object", "properties": {}}

    for entry in _split_fields(fields):
        parts = [p.strip() for p in entry.split("/") if p.strip()]
        current = schema["properties"]
        for i, part in enumerate(parts):
            if i == len(parts) - 1:
                # A leaf never replaces a container created by an earlier entry
                if part not in current:
                    current[part] = {"type": "string"}
            else:
                node = current.get(part)
                if not isinstance(node, dict) or node.get("type") != "object":
                    node = {"type": "object", "properties": {}}
                    current[part] = node
                node.setdefault("properties", {})
                current = node["properties"]

    return schema


def _properties(node: dict[str, Any]) -> dict[str, Any]:
    props = node.get("properties")
    if isinstance(props, dict):
        return props
    # Bare {"field": {...}} maps are accepted as property maps
    return {k: v for k, v in node.items() if isinstance(v, dict)}


def _is_container(node: Any) -> bool:
    return isinstance(node, dict) and node.get("type") == "object" and "properties" in node


def schema_leaf_paths(schema: dict[str, Any] | str) -> list[str]:
    """Depth-first slash paths of every leaf, in insertion order."""
    root = load_schema(schema)
    paths: list[str] = []

    def walk(node: dict[str, Any], prefix: str) -> None:
        for key, value in _properties(node).items():
            path = f"{prefix}/{key}" if prefix else key
            if _is_container(value):
                walk(value, path)
            else:
                paths.append(path)

    if root:
        walk(root, "")
    return paths


def schema_to_fields(schema: dict[str, Any] | str) -> str:
    """Nested schema -> flat field list (``", "``-joined slash paths)."""
    return ", ".join(schema_leaf_paths(schema))


def schema_to_outline(schema: dict[str, Any] | str) -> str:
    """Heading-per-level outline; depth N renders at heading level N+2."""
    root = load_schema(schema)
    lines: list[str] = []

    def walk(node: dict[str, Any], depth: int) -> None:
        for key, value in _properties(node).items():
            lines.append(f"{'#' * (depth + 2)} {key}")
            lines.append("")
            if _is_container(value):
                walk(value, depth + 1)

    if root:
        walk(root, 1)
    return "\n".join(lines)


def fields_to_outline(fields: str) -> str:
    return schema_to_outline(fields_to_schema(fields))


def flatten_structured(value: Any, schema: dict[str, Any] | str | None = None) -> dict[str, str]:
    """
    Flatten a parsed object into slash-path -> string entries.

    With a schema, declared leaf paths come first in schema order (missing
    ones map to ""); any extra keys the model produced follow.
    """
    flat: dict[str, str] = {}

    def walk(node: Any, prefix: str) -> None:
        if isinstance(node, dict) and node:
            for key, sub in node.items():
                walk(sub, f"{prefix}/{key}" if prefix else str(key))
        elif prefix:
            flat[prefix] = to_text(node)

    walk(value, "")

    if not schema:
        return flat

    ordered: dict[str, str] = {}
    for path in schema_leaf_paths(schema):
        ordered[path] = flat.get(path, "")
    for path, text in flat.items():
        ordered.setdefault(path, text)
    return ordered


def render_flattened(fields: dict[str, str]) -> str:
    """``{"topic": "x", "summary": "y"}`` -> ``"topic: x, summary: y"``."""
    return ", ".join(f"{path}: {value}" for path, value in fields.items())
