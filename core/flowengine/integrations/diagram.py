"""Mermaid diagram rendering and syntax checking."""

import base64
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Leading keyword -> diagram type
DIAGRAM_KEYWORDS: dict[str, str] = {
    "graph": "flowchart",
    "flowchart": "flowchart",
    "sequenceDiagram": "sequence",
    "classDiagram": "class",
    "stateDiagram": "state",
    "stateDiagram-v2": "state",
    "erDiagram": "er",
    "journey": "journey",
    "gantt": "gantt",
    "pie": "pie",
    "quadrantChart": "quadrant",
    "requirementDiagram": "requirement",
    "gitGraph": "git",
    "mindmap": "mindmap",
    "timeline": "timeline",
    "sankey-beta": "sankey",
    "xychart-beta": "xychart",
    "block-beta": "block",
    "architecture-beta": "architecture",
}

_FENCED_MERMAID = re.compile(r"```mermaid\s*\n(.*?)```", re.DOTALL)
_FIRST_WORD = re.compile(r"^\s*([A-Za-z][\w-]*)")


@dataclass
class DiagramParseResult:
    valid: bool
    diagram_type: str | None = None
    error: str | None = None


def detect_diagram_type(source: str) -> str | None:
    """Diagram type from the first meaningful line, skipping comments and front matter."""
    in_front_matter = False
    for raw in (source or "").splitlines():
        line = raw.strip()
        if line == "---":
            in_front_matter = not in_front_matter
            continue
        if in_front_matter or not line or line.startswith("%%"):
            continue
        match = _FIRST_WORD.match(line)
        return DIAGRAM_KEYWORDS.get(match.group(1)) if match else None
    return None


def extract_mermaid_blocks(text: str) -> list[str]:
    """Fenced ```mermaid blocks from markdown, in order."""
    return [block.strip() for block in _FENCED_MERMAID.findall(text or "") if block.strip()]


class DiagramRenderer(ABC):
    """Collaborator that renders and validates mermaid source."""

    @abstractmethod
    async def render(
        self, source: str, theme: str = "default", config: dict[str, Any] | None = None
    ) -> str:
        """Return SVG markup. Raises on invalid source or transport failure."""

    async def parse(self, source: str) -> DiagramParseResult:
        diagram_type = detect_diagram_type(source)
        if not (source or "").strip():
            return DiagramParseResult(valid=False, error="Diagram source is empty")
        if diagram_type is None:
            return DiagramParseResult(valid=False, error="Unknown diagram type")
        return DiagramParseResult(valid=True, diagram_type=diagram_type)


class MermaidInkRenderer(DiagramRenderer):
    """Renders through a mermaid.ink compatible service."""

    def __init__(self, base_url: str = "https://mermaid.ink", timeout_seconds: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _url(self, source: str, theme: str, config: dict[str, Any] | None) -> str:
        document = {"code": source, "mermaid": {"theme": theme, **(config or {})}}
        encoded = base64.urlsafe_b64encode(json.dumps(document).encode()).decode()
        return f"{self.base_url}/svg/base64:{encoded}"

    async def render(
        self, source: str, theme: str = "default", config: dict[str, Any] | None = None
    ) -> str:
        parsed = await self.parse(source)
        if not parsed.valid:
            raise ValueError(parsed.error)

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(self._url(source, theme, config))
        if response.status_code != 200:
            raise ValueError(f"Diagram render failed ({response.status_code}): {response.text[:200]}")
        return response.text
