"""
Variable Resolver - Expands {{token}} placeholders against run results.

Supported forms:
- {{nodeId}} / {{alias}}        whole output of a node
- {{nodeId.field.sub}}          a field of a node's structured output
- {{1}}, {{2}}, ...             output of the Nth incoming edge's source (1-based)
- {{name}} / {{name.field}}     run input variable

Resolution policy by the referenced node's status:
- success                       substitute
- error                         empty string (best-effort partial results)
- pending / running / skipped   leave the raw token, record a warning
- unknown name                  leave the raw token, record a warning
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from flowengine.graph.errors import DependencyUnresolved
from flowengine.graph.results import ExecutionResult, NodeStatus, to_text, walk_path

TOKEN_PATTERN = re.compile(r"\{\{(.+?)\}\}")


def extract_variables(text: str) -> list[str]:
    """Unique tokens in order of first appearance."""
    seen: list[str] = []
    for match in TOKEN_PATTERN.finditer(text or ""):
        token = match.group(1).strip()
        if token and token not in seen:
            seen.append(token)
    return seen


def has_variables(text: str) -> bool:
    return bool(TOKEN_PATTERN.search(text or ""))


@dataclass
class VariableScope:
    """Everything a node can reference while its variables are resolved."""

    results: Mapping[str, ExecutionResult]
    positional: list[str] = field(default_factory=list)  # incoming edge sources, edge order
    aliases: Mapping[str, str] = field(default_factory=dict)  # alias -> node id
    variables: Mapping[str, Any] = field(default_factory=dict)  # run input variables


class VariableResolver:
    """
    Resolves tokens for one host node and collects soft dependency warnings.

    Example:
        resolver = VariableResolver(scope, node_id="writer")
        prompt = resolver.resolve("Summarize {{1}} for {{audience}}")
        for warning in resolver.unresolved:
            logger.warning(str(warning))
    """

    def __init__(self, scope: VariableScope, node_id: str | None = None):
        self.scope = scope
        self.node_id = node_id
        self.unresolved: list[DependencyUnresolved] = []

    def resolve(self, text: str | None) -> str:
        """Substitute every resolvable token in a single pass."""
        if not text:
            return text or ""
        return TOKEN_PATTERN.sub(self._substitute, text)

    def resolve_value(self, value: Any) -> Any:
        """Resolve tokens inside strings nested in dicts and lists."""
        if isinstance(value, str):
            return self.resolve(value)
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item) for item in value]
        return value

    def lookup(self, token: str) -> tuple[bool, Any]:
        """Resolve a token to its raw value. Returns (resolved, value)."""
        token = token.strip()

        # Exact match first so ids or variables containing dots still work
        found, value = self._lookup_base(token, "")
        if found is not None:
            return found, value

        base, _, field_path = token.partition(".")
        found, value = self._lookup_base(base, field_path)
        if found is not None:
            return found, value

        self._warn(token, "unknown variable")
        return False, None

    def _lookup_base(self, base: str, field_path: str) -> tuple[bool | None, Any]:
        """(None, _) means ``base`` names nothing and the caller should keep looking."""
        token = f"{base}.{field_path}" if field_path else base

        if base.isdigit():
            index = int(base)
            if not 1 <= index <= len(self.scope.positional):
                self._warn(token, f"no input connected at position {index}")
                return False, None
            return self._from_node(self.scope.positional[index - 1], field_path, token)

        if base in self.scope.results:
            return self._from_node(base, field_path, token)

        if base in self.scope.aliases:
            return self._from_node(self.scope.aliases[base], field_path, token)

        if base in self.scope.variables:
            value = self.scope.variables[base]
            if field_path:
                found, sub = walk_path(value, field_path)
                return True, (sub if found else value)
            return True, value

        return None, None

    def _from_node(self, node_id: str, field_path: str, token: str) -> tuple[bool, Any]:
        result = self.scope.results.get(node_id)
        if result is None:
            self._warn(token, f"node '{node_id}' is not part of this run")
            return False, None

        if result.status == NodeStatus.ERROR:
            return True, ""

        if result.status != NodeStatus.SUCCESS:
            self._warn(token, f"node '{node_id}' is {result.status.value}")
            return False, None

        if field_path:
            found, value = result.field_value(field_path)
            if found:
                return True, value
        return True, result.as_text()

    def _substitute(self, match: re.Match[str]) -> str:
        resolved, value = self.lookup(match.group(1))
        if not resolved:
            return match.group(0)
        return to_text(value)

    def _warn(self, token: str, reason: str) -> None:
        if any(w.token == token for w in self.unresolved):
            return
        self.unresolved.append(DependencyUnresolved(token, node_id=self.node_id, reason=reason))


def resolve_variables(
    text: str,
    results: Mapping[str, ExecutionResult],
    positional: list[str] | None = None,
    aliases: Mapping[str, str] | None = None,
    variables: Mapping[str, Any] | None = None,
) -> str:
    """Functional form: ``resolve(text, resultsSoFar, positionalOrder)``."""
    scope = VariableScope(
        results=results,
        positional=list(positional or []),
        aliases=aliases or {},
        variables=variables or {},
    )
    return VariableResolver(scope).resolve(text)
