"""
Tests for field list <-> schema conversion and structured flattening.
"""

import pytest

from flowengine.graph.structured_output import (
    fields_to_outline,
    fields_to_schema,
    flatten_structured,
    load_schema,
    parse_structured_text,
    render_flattened,
    schema_to_fields,
    strip_code_fences,
)


def test_fields_to_schema_nests_slash_paths():
    schema = fields_to_schema("id, name/first, name/last")

    assert schema == {
        "type": "object",
        "properties": {
            "id": {"type": "string"},
            "name": {
                "type": "object",
                "properties": {"first": {"type": "string"}, "last": {"type": "string"}},
            },
        },
    }


def test_schema_to_fields_inverts_fields_to_schema():
    assert schema_to_fields(fields_to_schema("id,name/first,name/last")) == "id, name/first, name/last"


def test_schema_to_fields_accepts_json_text():
    text = '{"type": "object", "properties": {"a": {"type": "string"}, "b": {"type": "number"}}}'

    assert schema_to_fields(text) == "a, b"


def test_later_leaf_does_not_replace_container():
    schema = fields_to_schema("name/first, name")

    assert schema["properties"]["name"]["type"] == "object"
    assert schema_to_fields(schema) == "name/first"


def test_outline_uses_one_heading_level_per_depth():
    outline = fields_to_outline("topic, author/name")

    assert outline == "### topic\n\n### author\n\n#### name\n"


def test_flatten_orders_by_schema_and_fills_missing():
    schema = fields_to_schema("topic, summary, meta/source")

    flat = flatten_structured({"summary": "short", "topic": "tides", "extra": 1}, schema)

    assert list(flat) == ["topic", "summary", "meta/source", "extra"]
    assert flat["meta/source"] == ""
    assert flat["extra"] == "1"


def test_render_flattened():
    assert render_flattened({"topic": "x", "summary": "y"}) == "topic: x, summary: y"


def test_parse_structured_text_strips_fences_and_prose():
    assert parse_structured_text('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_structured_text('Here you go: {"a": 2} hope that helps') == {"a": 2}
    assert strip_code_fences("```\n[1]\n```") == "[1]"


def test_parse_structured_text_rejects_garbage():
    with pytest.raises(ValueError):
        parse_structured_text("not json at all")
    with pytest.raises(ValueError):
        parse_structured_text("   ")


def test_load_schema_requires_object():
    assert load_schema(None) == {}
    assert load_schema("") == {}
    with pytest.raises(ValueError):
        load_schema("[1, 2]")
