"""Configuration management for pycall.

Two kinds of configuration live here:

- ``CallOptions``: the per-invocation record built from caller-supplied
  parameters. It is immutable and is persisted as JSON in the workspace so the
  callee process (daemon or fresh runtime) can load it.
- ``DaemonConfig``: workspace-level settings for launching and talking to the
  background daemon, stored in ``<workspace>/config.json``.
"""

import json
import logging
import os
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import MalformedPayload

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000
DEFAULT_WORKSPACE = Path.home() / ".pycall"


def _temp_file(call_id: str, kind: str) -> Path:
    # tempfile.gettempdir() is usually ram-backed (/tmp) on Linux
    return Path(tempfile.gettempdir()) / f"pycall-{call_id}-{kind}.json"


def thread_env(threads: Union[int, str]) -> Dict[str, str]:
    """Environment variables pinning the thread count of numerical libraries.

    Empty for "auto", which leaves the choice to the libraries.
    """
    if threads == "auto":
        return {}
    n = str(threads)
    return {
        "PYCALL_THREADS": n,
        "OMP_NUM_THREADS": n,
        "OPENBLAS_NUM_THREADS": n,
        "MKL_NUM_THREADS": n,
    }


class CallOptions(BaseModel):
    """Options for a single call, equivalent to the parsed command line.

    Fields:
        f: Function expression to evaluate and call
        infile: JSON payload file holding positional and keyword arguments
        outfile: JSON result file the outputs of ``f`` are written into
        runtime: Python interpreter used for the daemon or a fresh instance
        project: Project directory put on ``sys.path`` before loading code
        threads: Number of threads for numerical libraries, or "auto"
        setup: Setup script executed before defining and calling ``f``
        nofun: Treat ``f`` as statements to execute, not a function: run and return nothing
        modules: Modules imported before defining and calling ``f``
        cwd: Working directory to change into before loading code
        workspace: Directory for daemon logs, options and configuration
        server: Run on the persistent daemon instead of a fresh interpreter
        port: Port the daemon listens on
        shared: Evaluate in the namespace retained across calls if true, in a
            fresh one if false, or as the daemon was launched if None
        restart: Restart the daemon before loading code
        shutdown: Shut down the daemon and return
        gc: Remove temporary files after each call
        debug: Print debugging information
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    call_id: str = Field(default="", description="Unique id of this call")
    f: str = Field(default="", description="Function expression")
    infile: Path = Field(default=None, description="Argument payload file")
    outfile: Path = Field(default=None, description="Result file")
    runtime: str = Field(default=sys.executable, description="Python interpreter")
    project: Optional[Path] = Field(default=None, description="Project directory")
    threads: Union[int, Literal["auto"]] = Field(
        default="auto", description="Thread count for numerical libraries"
    )
    setup: Optional[Path] = Field(default=None, description="Setup script")
    nofun: bool = Field(default=False, description="Execute f, return nothing")
    modules: List[str] = Field(default_factory=list, description="Modules to import")
    cwd: Path = Field(default_factory=lambda: Path(os.getcwd()))
    workspace: Path = Field(default=DEFAULT_WORKSPACE)
    server: bool = Field(default=True, description="Use the persistent daemon")
    port: int = Field(default=DEFAULT_PORT, description="Daemon port")
    shared: Optional[bool] = Field(
        default=None, description="Use the retained namespace, None for daemon default"
    )
    restart: bool = Field(default=False, description="Restart daemon first")
    shutdown: bool = Field(default=False, description="Shut down daemon and return")
    gc: bool = Field(default=True, description="Remove temporary files")
    debug: bool = Field(default=False, description="Debug output")

    @model_validator(mode="before")
    @classmethod
    def _fill_temp_files(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("call_id"):
            data["call_id"] = uuid.uuid4().hex
        for key, kind in (("infile", "in"), ("outfile", "out")):
            if data.get(key) is None:
                data[key] = _temp_file(data["call_id"], kind)
        return data

    @field_validator("threads")
    @classmethod
    def _positive_threads(cls, v):
        if isinstance(v, int) and v < 1:
            raise ValueError("threads must be a positive integer or 'auto'")
        return v

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError(f"port out of range: {v}")
        return v

    @field_validator("modules", mode="before")
    @classmethod
    def _split_modules(cls, v):
        if isinstance(v, str):
            return [m.strip() for m in v.split(",") if m.strip()]
        return v

    @property
    def is_shutdown(self) -> bool:
        """True when this invocation only shuts the daemon down."""
        return self.shutdown

    @property
    def options_file(self) -> Path:
        """Where these options are persisted for the callee process."""
        return self.workspace / f"options-{self.call_id}.json"

    def thread_env(self) -> Dict[str, str]:
        """Environment variables that pin the thread count of the runtime."""
        return thread_env(self.threads)


def save_options(options: CallOptions, path: Optional[Path] = None) -> Path:
    """Persist call options as JSON for the callee process.

    Args:
        options: Options to write
        path: Target file, defaults to ``options.options_file``

    Returns:
        Path the options were written to
    """
    path = path or options.options_file
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(options.model_dump_json(indent=2), encoding="utf-8")
    return path


def load_options(path: Path) -> CallOptions:
    """Load call options written by ``save_options``.

    Raises:
        MalformedPayload: If the file is missing, unreadable or does not hold valid options
    """
    try:
        return CallOptions.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise MalformedPayload(f"Options file not found: {path}") from e
    except (UnicodeDecodeError, OSError) as e:
        raise MalformedPayload(f"Cannot read options file {path}: {e}") from e
    except ValidationError as e:
        raise MalformedPayload(f"Invalid options in {path}: {e}") from e


class PollingConfig(BaseModel):
    """Configuration for condition polling behavior."""

    initial_interval: float = Field(
        default=0.05, description="Initial polling interval in seconds"
    )
    backoff_factor: float = Field(
        default=1.5, description="Exponential backoff multiplier"
    )
    max_interval: float = Field(
        default=1.0, description="Maximum polling interval in seconds"
    )


class DaemonConfig(BaseModel):
    """Configuration for launching and reaching the daemon."""

    host: str = Field(default="127.0.0.1", description="Interface the daemon binds")
    startup_timeout: float = Field(
        default=60.0, description="Seconds to wait for the daemon to answer ping"
    )
    shutdown_timeout: float = Field(
        default=10.0, description="Seconds to wait for the daemon port to be released"
    )
    connect_timeout: float = Field(
        default=2.0, description="Socket connect timeout in seconds"
    )
    sync_request_timeout: Optional[float] = Field(
        default=None, description="RPC timeout for a call, None for unlimited"
    )
    polling: PollingConfig = Field(default_factory=PollingConfig)


class ConfigManager:
    """Loads and saves ``DaemonConfig`` from the workspace."""

    CONFIG_NAME = "config.json"

    def __init__(self, workspace: Optional[Path] = None):
        self.workspace = Path(workspace or DEFAULT_WORKSPACE)
        self.config_path = self.workspace / self.CONFIG_NAME
        self._config: Optional[DaemonConfig] = None

    def load(self) -> DaemonConfig:
        """Load configuration from file or return defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
                self._config = DaemonConfig(**data)
            except Exception as e:
                raise ValueError(f"Failed to load config from {self.config_path}: {e}")
        else:
            self._config = DaemonConfig()

        return self._config

    def save(self, config: Optional[DaemonConfig] = None) -> None:
        """Save configuration to file."""
        if config is None:
            config = self._config

        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump(config.model_dump(), f, indent=2)

    def get_config(self) -> DaemonConfig:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            return self.load()
        return self._config
