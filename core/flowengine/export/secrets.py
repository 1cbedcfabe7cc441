"""Detect hard-coded credentials in flow export documents."""

import json
import re
from dataclasses import dataclass
from typing import Any

SECRET_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("OpenAI API Key", re.compile(r"sk-[a-zA-Z0-9]{32,}")),
    ("OpenAI Project API Key", re.compile(r"sk-proj-[a-zA-Z0-9_-]{32,}")),
    ("Anthropic API Key", re.compile(r"sk-ant-[a-zA-Z0-9_-]{32,}")),
    ("Google API Key", re.compile(r"AIza[a-zA-Z0-9_-]{35}")),
    ("Slack Token", re.compile(r"xoxb-[0-9]{10,13}-[0-9]{10,13}-[a-zA-Z0-9]{24,}")),
    ("GitHub Token", re.compile(r"ghp_[a-zA-Z0-9]{36}")),
    ("GitHub OAuth Token", re.compile(r"gho_[a-zA-Z0-9]{36}")),
    ("AWS Access Key", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("Stripe API Key", re.compile(r"sk_live_[a-zA-Z0-9]{24,}")),
    ("Stripe Test Key", re.compile(r"sk_test_[a-zA-Z0-9]{24,}")),
    ("Twilio API Key", re.compile(r"SK[a-z0-9]{32}")),
    ("SendGrid API Key", re.compile(r"SG\.[a-zA-Z0-9_-]{22}\.[a-zA-Z0-9_-]{43}")),
    ("Bearer Token", re.compile(r"Bearer [a-zA-Z0-9_\-.=]{20,}")),
    ("JWT Token", re.compile(r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*")),
]


@dataclass
class SecretMatch:
    type: str
    value: str
    location: str
    redacted: str


def redact_secret(secret: str) -> str:
    """Keep the first and last four characters."""
    if len(secret) <= 8:
        return "*" * len(secret)
    return secret[:4] + "*" * min(len(secret) - 8, 20) + secret[-4:]


def _as_dict(document: Any) -> dict[str, Any]:
    if hasattr(document, "model_dump"):
        return document.model_dump(by_alias=True, mode="json")
    return document


def _locate(document: dict[str, Any], secret: str) -> str:
    for node in document.get("flow", {}).get("nodes", []):
        if secret in json.dumps(node.get("data", {})):
            return f"Node {node.get('id')} ({node.get('type') or 'unknown'})"
    for key, label in (
        ("meta", "Workflow metadata"),
        ("settings", "Workflow settings"),
        ("variables", "Workflow variables"),
    ):
        if document.get(key) and secret in json.dumps(document[key]):
            return label
    return "Unknown location"


def scan_for_secrets(document: Any) -> list[SecretMatch]:
    """
    Every likely secret in an export (a FlowExport or its dict form).

    Example:
        for match in scan_for_secrets(export):
            print(f"{match.type} in {match.location}: {match.redacted}")
    """
    data = _as_dict(document)
    text = json.dumps(data, indent=2)
    matches = []
    for name, pattern in SECRET_PATTERNS:
        for found in pattern.finditer(text):
            value = found.group(0)
            matches.append(
                SecretMatch(
                    type=name,
                    value=value,
                    location=_locate(data, value),
                    redacted=redact_secret(value),
                )
            )
    return matches
