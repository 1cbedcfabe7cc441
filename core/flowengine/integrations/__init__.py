"""External collaborators: HTTP, code sandbox, diagram rendering."""

from flowengine.integrations.diagram import (
    DiagramParseResult,
    DiagramRenderer,
    MermaidInkRenderer,
    detect_diagram_type,
    extract_mermaid_blocks,
)
from flowengine.integrations.http import HttpClient, HttpResponse, HttpxClient, build_auth_headers
from flowengine.integrations.sandbox import CodeSandbox, SandboxResult, SubprocessSandbox

__all__ = [
    "HttpClient",
    "HttpResponse",
    "HttpxClient",
    "build_auth_headers",
    "CodeSandbox",
    "SandboxResult",
    "SubprocessSandbox",
    "DiagramRenderer",
    "DiagramParseResult",
    "MermaidInkRenderer",
    "detect_diagram_type",
    "extract_mermaid_blocks",
]
