"""Configuration loading and validation."""

import json
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError


DEFAULT_WORKER_SCRIPT = str(
    Path(__file__).resolve().parent.parent / "orchestrator" / "worker_host.py"
)

_MEMORY_PATTERN = re.compile(r"^(\d+)([KMG]?)$")
_MEMORY_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


def parse_memory(value: str) -> int:
    """Convert a memory threshold such as ``100M`` into bytes."""
    match = _MEMORY_PATTERN.match(value.strip().upper())
    if not match:
        raise ValueError(f"Invalid memory threshold: {value!r}")
    amount, unit = match.groups()
    return int(amount) * _MEMORY_UNITS[unit]


class LocalDaemonConfig(BaseModel):
    """Settings for the bundled local process daemon."""
    max_restarts: int = Field(default=15, ge=0)
    kill_timeout_seconds: float = Field(default=1.6, gt=0)
    memory_check_interval_seconds: float = Field(default=5.0, gt=0)


class LoggingConfig(BaseModel):
    """Logging output configuration."""
    level: str = Field(default="INFO")
    format: str = Field(default="console")

    @field_validator("level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value

    @field_validator("format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        if value not in ("console", "json"):
            raise ValueError("format must be 'console' or 'json'")
        return value


class SupervisorConfig(BaseModel):
    """Main supervisor configuration."""
    name_prefix: str = Field(default="heq-server-", min_length=1)
    default_workers: int = Field(default=1, ge=1)
    exec_mode: str = Field(default="cluster")
    max_memory_restart: str = Field(default="100M")
    interpreter_args: list[str] = Field(default_factory=lambda: ["-u"])
    worker_script: str = Field(default=DEFAULT_WORKER_SCRIPT)

    daemon: LocalDaemonConfig = Field(default_factory=LocalDaemonConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("max_memory_restart")
    @classmethod
    def _check_memory(cls, value: str) -> str:
        parse_memory(value)
        return value.strip().upper()

    def full_name(self, name: str) -> str:
        """Daemon-side name of the app group ``name``."""
        return f"{self.name_prefix}{name}"


class ConfigLoader:
    """Loads and validates YAML/JSON supervisor configuration."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load(self, path: Optional[str] = None) -> SupervisorConfig:
        """Load supervisor configuration, falling back to defaults."""
        if path is None:
            default = self.config_dir / "supervisor.yaml"
            if not default.exists():
                return SupervisorConfig()
            config_path = default
        else:
            config_path = Path(path)

        data = self._load_file(config_path)
        try:
            return SupervisorConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid supervisor config: {e}", config_path=str(config_path))

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        content = path.read_text()
        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

        if not isinstance(data, dict):
            raise ConfigError("Config root must be a mapping", config_path=str(path))
        return data
