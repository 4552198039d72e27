"""Shared blockflow configuration utilities.

Centralises reading of ~/.blockflow/configuration.json so that the
executor, the pause store and the CLI share one implementation.

Example configuration::

    {
        "engine": {
            "max_layers": 1000,
            "max_parallel_concurrency": 4,
            "fail_on_pause_persist_error": true
        }
    }
"""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from blockflow.graph.block import DEFAULT_MAX_ITERATIONS

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

BLOCKFLOW_HOME = Path.home() / ".blockflow"
BLOCKFLOW_CONFIG_FILE = BLOCKFLOW_HOME / "configuration.json"


def get_blockflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load blockflow configuration from ~/.blockflow/configuration.json."""
    config_file = path or BLOCKFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def get_storage_path() -> Path:
    """Return the configured storage root, falling back to ~/.blockflow/storage."""
    configured = get_blockflow_config().get("engine", {}).get("storage_path")
    return Path(configured).expanduser() if configured else BLOCKFLOW_HOME / "storage"


# ---------------------------------------------------------------------------
# EngineConfig – shared by executor, debug driver and pause manager
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """
    Execution limits and failure policy.

    Attributes:
        max_layers: Safety cap on scheduled layers per run
        debug_max_steps: Steps DebugSession.run_to_completion takes before forcing completion
        max_parallel_concurrency: Parallel iterations allowed in flight per container
        default_loop_iterations: Iterations for ``for`` loops that do not set a count
        fail_on_pause_persist_error: Fail the run when a paused execution cannot be stored
        storage_path: Root for pause records and run logs
    """

    max_layers: int = 500
    debug_max_steps: int = 500
    max_parallel_concurrency: int = 10
    default_loop_iterations: int = DEFAULT_MAX_ITERATIONS
    fail_on_pause_persist_error: bool = False
    storage_path: Path = field(default_factory=get_storage_path)

    @classmethod
    def from_file(cls, path: Path | None = None) -> "EngineConfig":
        """Build a config from the ``engine`` section of the configuration file."""
        section = get_blockflow_config(path).get("engine", {})
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in section.items() if k in known}
        if "storage_path" in values:
            values["storage_path"] = Path(values["storage_path"]).expanduser()
        return cls(**values)


DEFAULT_ENGINE_CONFIG = EngineConfig()

STRICT_ENGINE_CONFIG = EngineConfig(
    max_layers=200,
    debug_max_steps=200,
    fail_on_pause_persist_error=True,
)
