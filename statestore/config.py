"""
Configuration

Defaults come from environment variables; an optional YAML file overrides
them; environment variables named explicitly below override the file.

    STATESTORE_DIR              data directory (default data/statestore)
    STATESTORE_STATE_FILE       state file path (default <dir>/state.json)
    STATESTORE_CONFIG           YAML config file (default <dir>/statestore.yaml)
    STATESTORE_SAVE_INTERVAL    seconds between periodic dirty checks
    STATESTORE_MAX_LOG_ENTRIES  change log capacity

Example YAML:

    data_dir: data/statestore
    change_log:
      max_entries: 10000
      importance:
        critical: [issues, fixes, learning, game]
        skip: [system.health, metadata]
    persistence:
      save_interval: 30
      timeout: 30
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .change_log import DEFAULT_MAX_ENTRIES, ImportancePolicy
from .errors import ConfigError
from .persistence import (
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PERSISTED_LOG_ENTRIES,
    DEFAULT_SAVE_INTERVAL_SECONDS,
)

logger = logging.getLogger("config")


# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_DATA_DIR = "data/statestore"
DEFAULT_STATE_FILE = "state.json"
DEFAULT_ARCHIVE_FILE = "changelog-archive.jsonl"
DEFAULT_CONFIG_FILE = "statestore.yaml"
DEFAULT_SAVE_TIMEOUT = 30.0
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8100


@dataclass
class StoreConfig:
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    state_file: Optional[Path] = None
    archive_file: Optional[Path] = None
    archive_enabled: bool = True
    max_log_entries: int = DEFAULT_MAX_ENTRIES
    persisted_log_entries: int = DEFAULT_PERSISTED_LOG_ENTRIES
    importance: ImportancePolicy = field(default_factory=ImportancePolicy)
    save_interval: float = DEFAULT_SAVE_INTERVAL_SECONDS
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    max_save_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    save_timeout: Optional[float] = DEFAULT_SAVE_TIMEOUT
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @property
    def state_path(self) -> Path:
        return self.state_file or self.data_dir / DEFAULT_STATE_FILE

    @property
    def archive_path(self) -> Optional[Path]:
        if not self.archive_enabled:
            return None
        return self.archive_file or self.data_dir / DEFAULT_ARCHIVE_FILE

    def to_dict(self) -> Dict[str, Any]:
        archive = self.archive_path
        return {
            "data_dir": str(self.data_dir),
            "state_file": str(self.state_path),
            "archive_file": str(archive) if archive else None,
            "max_log_entries": self.max_log_entries,
            "persisted_log_entries": self.persisted_log_entries,
            "save_interval": self.save_interval,
            "debounce_seconds": self.debounce_seconds,
            "max_save_attempts": self.max_save_attempts,
            "backoff_seconds": self.backoff_seconds,
            "save_timeout": self.save_timeout,
            "host": self.host,
            "port": self.port,
        }


def read_yaml_file(file_path: Path) -> Dict[str, Any]:
    """Read and parse a YAML mapping."""
    try:
        with open(file_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(str(file_path), f"unparseable YAML: {e}")
    if not isinstance(data, dict):
        raise ConfigError(str(file_path), "top level must be a mapping")
    return data


def load_config(
    config_file: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> StoreConfig:
    """
    Build a StoreConfig from the environment and an optional YAML file.

    A config file named explicitly (argument or STATESTORE_CONFIG) must exist;
    the default one is optional.
    """
    env = os.environ if env is None else env
    data_dir = Path(env.get("STATESTORE_DIR", DEFAULT_DATA_DIR))

    explicit = config_file or env.get("STATESTORE_CONFIG")
    path = Path(explicit) if explicit else data_dir / DEFAULT_CONFIG_FILE
    data: Dict[str, Any] = {}
    if path.exists():
        data = read_yaml_file(path)
        logger.info(f"Loaded configuration from {path}")
    elif explicit:
        raise ConfigError(str(path), "file not found")

    source = str(path)
    change_log = _section(data, "change_log", source)
    persistence = _section(data, "persistence", source)
    server = _section(data, "server", source)

    config = StoreConfig(data_dir=Path(data.get("data_dir", data_dir)))
    if "state_file" in data:
        config.state_file = Path(data["state_file"])
    if "archive_file" in data:
        if data["archive_file"] is None:
            config.archive_enabled = False
        else:
            config.archive_file = Path(data["archive_file"])

    config.max_log_entries = _number(change_log, "max_entries", config.max_log_entries, int, source)
    config.persisted_log_entries = _number(
        change_log, "persisted_entries", config.persisted_log_entries, int, source
    )
    if "importance" in change_log:
        try:
            config.importance = ImportancePolicy.from_dict(_section(change_log, "importance", source))
        except ValueError as e:
            raise ConfigError(source, f"change_log.importance: {e}")

    config.save_interval = _number(persistence, "save_interval", config.save_interval, float, source)
    config.debounce_seconds = _number(persistence, "debounce", config.debounce_seconds, float, source)
    config.max_save_attempts = _number(persistence, "max_attempts", config.max_save_attempts, int, source)
    config.backoff_seconds = _number(persistence, "backoff", config.backoff_seconds, float, source)
    if "timeout" in persistence:
        timeout = persistence["timeout"]
        config.save_timeout = None if timeout is None else _number(persistence, "timeout", 0.0, float, source)

    config.host = str(server.get("host", config.host))
    config.port = _number(server, "port", config.port, int, source)

    # Environment overrides
    if "STATESTORE_DIR" in env:
        config.data_dir = data_dir
    if env.get("STATESTORE_STATE_FILE"):
        config.state_file = Path(env["STATESTORE_STATE_FILE"])
    if env.get("STATESTORE_SAVE_INTERVAL"):
        config.save_interval = _number(
            env, "STATESTORE_SAVE_INTERVAL", config.save_interval, float, "environment"
        )
    if env.get("STATESTORE_MAX_LOG_ENTRIES"):
        config.max_log_entries = _number(
            env, "STATESTORE_MAX_LOG_ENTRIES", config.max_log_entries, int, "environment"
        )

    if config.max_log_entries < 1:
        raise ConfigError(source, "change_log.max_entries must be at least 1")
    if config.save_interval <= 0:
        raise ConfigError(source, "persistence.save_interval must be positive")
    return config


def _section(data: Mapping[str, Any], name: str, source: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(source, f"'{name}' must be a mapping")
    return value


def _number(data: Mapping[str, Any], name: str, default: Any, kind: type, source: str) -> Any:
    if name not in data:
        return default
    try:
        return kind(data[name])
    except (TypeError, ValueError):
        raise ConfigError(source, f"'{name}' must be a number, got {data[name]!r}")
