"""
Code sandbox - runs user code for python/javascript nodes out of process.

The user's code sees a ``context`` dict (upstream results and run inputs)
and produces a value either with an explicit ``return`` or as its last
expression. The value travels back as JSON on stdout.
"""

import ast
import asyncio
import json
import logging
import shutil
import sys
import textwrap
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

RESULT_MARKER = "__FLOWENGINE_RESULT__"

_PYTHON_RUNNER = """
import json, sys
context = json.loads(sys.stdin.read() or "{{}}")
{body}
try:
    _value = __flow_main(context)
except Exception as exc:
    print("{marker}" + json.dumps({{"error": f"{{type(exc).__name__}}: {{exc}}"}}))
    sys.exit(0)
print("{marker}" + json.dumps({{"value": _value}}, default=str))
"""

_JS_RUNNER = """
const chunks = [];
process.stdin.on("data", (c) => chunks.push(c));
process.stdin.on("end", async () => {{
  const context = JSON.parse(Buffer.concat(chunks).toString() || "{{}}");
  try {{
    const value = await (async (context) => {{
{body}
    }})(context);
    console.log("{marker}" + JSON.stringify({{ value: value === undefined ? null : value }}));
  }} catch (err) {{
    console.log("{marker}" + JSON.stringify({{ error: String(err && err.message || err) }}));
  }}
}});
"""


@dataclass
class SandboxResult:
    value: Any = None
    error: str | None = None
    stdout: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None


class CodeSandbox(ABC):
    """Runs user code with a context mapping and returns its value or error."""

    @abstractmethod
    async def run(
        self, source: str, context: dict[str, Any], language: str = "python"
    ) -> SandboxResult:
        pass


def wrap_python(source: str) -> str:
    """
    Wrap user code in a function so ``return`` works at top level and the
    last bare expression becomes the return value.
    """
    source = textwrap.dedent(source or "")
    try:
        tree = ast.parse(source)
    except SyntaxError:
        # Let the interpreter report it with the user's own line numbers
        return "def __flow_main(context):\n" + textwrap.indent(source or "pass", "    ")

    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body[-1]
        tree.body[-1] = ast.copy_location(ast.Return(value=last.value), last)

    func = ast.FunctionDef(
        name="__flow_main",
        args=ast.arguments(
            posonlyargs=[],
            args=[ast.arg(arg="context")],
            kwonlyargs=[],
            kw_defaults=[],
            defaults=[],
        ),
        body=tree.body or [ast.Pass()],
        decorator_list=[],
        returns=None,
        type_params=[],
    )
    module = ast.Module(body=[func], type_ignores=[])
    return ast.unparse(ast.fix_missing_locations(module))


class SubprocessSandbox(CodeSandbox):
    """Isolated interpreter per call (``python -I``, ``node``)."""

    def __init__(self, timeout_seconds: float = 30.0, node_binary: str = "node"):
        self.timeout_seconds = timeout_seconds
        self.node_binary = node_binary

    async def run(
        self, source: str, context: dict[str, Any], language: str = "python"
    ) -> SandboxResult:
        if language == "python":
            script = _PYTHON_RUNNER.format(body=wrap_python(source), marker=RESULT_MARKER)
            argv = [sys.executable, "-I", "-c", script]
        elif language == "javascript":
            node = shutil.which(self.node_binary)
            if node is None:
                return SandboxResult(error="JavaScript runtime 'node' is not installed")
            body = textwrap.indent(source or "", "      ")
            script = _JS_RUNNER.format(body=body, marker=RESULT_MARKER)
            argv = [node, "-e", script]
        else:
            return SandboxResult(error=f"Unsupported language: {language}")

        payload = json.dumps(context, default=str).encode()
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(payload), timeout=self.timeout_seconds
            )
        except (TimeoutError, asyncio.CancelledError):
            proc.kill()
            await proc.wait()
            raise

        return self._parse_output(stdout.decode(errors="replace"), stderr.decode(errors="replace"))

    @staticmethod
    def _parse_output(stdout: str, stderr: str) -> SandboxResult:
        printed: list[str] = []
        outcome: dict[str, Any] | None = None
        for line in stdout.splitlines():
            if line.startswith(RESULT_MARKER):
                outcome = json.loads(line[len(RESULT_MARKER) :])
            else:
                printed.append(line)

        if outcome is None:
            message = stderr.strip().splitlines()[-1] if stderr.strip() else "no result produced"
            return SandboxResult(error=message, stdout="\n".join(printed))
        if "error" in outcome:
            return SandboxResult(error=outcome["error"], stdout="\n".join(printed))
        return SandboxResult(value=outcome.get("value"), stdout="\n".join(printed))
