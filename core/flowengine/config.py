"""Engine configuration.

Reads ~/.flowengine/configuration.json (or the file named by
FLOWENGINE_CONFIG) so the CLI, the webhook server and embedding code share
one set of defaults. Example file:

    {
      "llm": {"provider": "anthropic", "model": "claude-haiku-4-5-20251001",
              "api_key_env_var": "ANTHROPIC_API_KEY"},
      "execution": {"node_timeout_seconds": 120, "max_concurrency": 4,
                    "error_handling": "continue"},
      "webhooks": {"host": "0.0.0.0", "port": 8080}
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILE = Path.home() / ".flowengine" / "configuration.json"
DEFAULT_MODEL = "anthropic/claude-haiku-4-5-20251001"
DEFAULT_AGENT_MAX_STEPS = 10

EXECUTION_MODES = ("parallel", "sequential")
ERROR_HANDLING_MODES = ("continue", "stop", "fallback")

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------


def config_path() -> Path:
    override = os.environ.get("FLOWENGINE_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_FILE


def get_engine_config() -> dict[str, Any]:
    """Load the configuration file; missing or unreadable files yield {}."""
    path = config_path()
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _section(name: str) -> dict[str, Any]:
    value = get_engine_config().get(name, {})
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_preferred_model() -> str:
    """Default model id for nodes that don't name one (``provider/model``)."""
    llm = _section("llm")
    if llm.get("provider") and llm.get("model"):
        return f"{llm['provider']}/{llm['model']}"
    return DEFAULT_MODEL


def get_api_key() -> str | None:
    """API key from the environment variable named in the configuration."""
    api_key_env_var = _section("llm").get("api_key_env_var")
    if api_key_env_var:
        return os.environ.get(api_key_env_var)
    return None


def _execution(key: str, default: Any) -> Any:
    return _section("execution").get(key, default)


def _webhooks(key: str, default: Any) -> Any:
    return _section("webhooks").get(key, default)


# ---------------------------------------------------------------------------
# RunSettings – per-run knobs for the orchestrator
# ---------------------------------------------------------------------------


@dataclass
class RunSettings:
    """Orchestrator settings; defaults come from the configuration file."""

    node_timeout_seconds: float | None = field(
        default_factory=lambda: _execution("node_timeout_seconds", 300.0)
    )
    cancel_grace_seconds: float = field(
        default_factory=lambda: _execution("cancel_grace_seconds", 5.0)
    )
    max_concurrency: int | None = field(default_factory=lambda: _execution("max_concurrency", None))
    execution_mode: str = field(default_factory=lambda: _execution("execution_mode", "parallel"))
    error_handling: str = field(default_factory=lambda: _execution("error_handling", "continue"))
    agent_max_steps: int = field(
        default_factory=lambda: _execution("agent_max_steps", DEFAULT_AGENT_MAX_STEPS)
    )
    default_model: str = field(default_factory=get_preferred_model)

    def __post_init__(self):
        if self.execution_mode not in EXECUTION_MODES:
            raise ValueError(f"execution_mode must be one of {EXECUTION_MODES}")
        if self.error_handling not in ERROR_HANDLING_MODES:
            raise ValueError(f"error_handling must be one of {ERROR_HANDLING_MODES}")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")

    @property
    def effective_concurrency(self) -> int | None:
        if self.execution_mode == "sequential":
            return 1
        return self.max_concurrency


@dataclass
class WebhookSettings:
    host: str = field(default_factory=lambda: _webhooks("host", "127.0.0.1"))
    port: int = field(default_factory=lambda: _webhooks("port", 8080))
    max_requests_per_minute: int = field(
        default_factory=lambda: _webhooks("max_requests_per_minute", 60)
    )
