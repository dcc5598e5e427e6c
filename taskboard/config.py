# Task board: configuration
# Board layout, gateway and logging come from taskboard.yaml (or the file
# named by TASKBOARD_CONFIG). A missing file means defaults.

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .executor import ReorderExecutor
from .gateway import InMemorySyncGateway, SyncGateway
from .http_gateway import HttpSyncGateway
from .schema import ConfigError
from .sqlite_store import SQLiteSyncGateway
from .store import TaskStore
from .workflow import TransitionPolicy

CONFIG_PATH = Path("taskboard.yaml")
CONFIG_ENV = "TASKBOARD_CONFIG"

PRESETS: Dict[str, Dict[str, str]] = {
    "three-column": {
        "todo": "To Do",
        "in-progress": "In Progress",
        "completed": "Completed",
    },
    "four-column": {
        "todo": "To Do",
        "in_progress": "In Progress",
        "review": "Review",
        "done": "Done",
    },
}
DEFAULT_PRESET = "three-column"

GATEWAY_TYPES = ("memory", "sqlite", "http")


@dataclass
class BoardConfig:
    """Runtime configuration for one board client."""

    # Board layout
    columns: List[str] = field(default_factory=lambda: list(PRESETS[DEFAULT_PRESET]))
    titles: Dict[str, str] = field(default_factory=lambda: dict(PRESETS[DEFAULT_PRESET]))
    default_status: Optional[str] = None
    transitions: Optional[Dict[str, List[str]]] = None

    # Gateway
    gateway_type: str = "memory"
    db_path: str = "~/.local/share/taskboard/board.db"
    base_url: str = "http://127.0.0.1:3000"
    api_key_env: str = "TASKBOARD_API_SECRET"
    timeout: float = 5.0
    poll_interval: float = 2.0

    # Logging
    log_level: str = "INFO"

    def validate(self) -> "BoardConfig":
        if not self.columns:
            raise ConfigError("board.columns must name at least one column")
        if len(set(self.columns)) != len(self.columns):
            raise ConfigError(f"board.columns has duplicates: {self.columns}")
        if self.default_status is not None and self.default_status not in self.columns:
            raise ConfigError(
                f"board.default_status '{self.default_status}' is not a column. "
                f"Available: {self.columns}"
            )
        if self.gateway_type not in GATEWAY_TYPES:
            raise ConfigError(
                f"Unknown gateway type '{self.gateway_type}'. "
                f"Available: {list(GATEWAY_TYPES)}"
            )
        if logging.getLevelName(str(self.log_level).upper()) not in range(0, 51):
            raise ConfigError(f"Unknown log level: {self.log_level}")
        self.policy().validate(self.columns)
        return self

    def title_for(self, status: str) -> str:
        return self.titles.get(status) or status.replace("_", " ").replace("-", " ").title()

    def policy(self) -> TransitionPolicy:
        return TransitionPolicy(self.transitions)

    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env) or None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BoardConfig":
        """Build from the parsed YAML mapping (sections board/gateway/logging)."""
        if not isinstance(raw, dict):
            raise ConfigError("Config root must be a mapping")
        board = _section(raw, "board")
        gateway = _section(raw, "gateway")
        log_cfg = _section(raw, "logging")

        preset = board.get("preset", DEFAULT_PRESET)
        if preset not in PRESETS:
            raise ConfigError(f"Unknown preset '{preset}'. Available: {list(PRESETS)}")
        columns = board["columns"] if "columns" in board else list(PRESETS[preset])
        if not isinstance(columns, list):
            raise ConfigError("board.columns must be a list")
        titles = {s: t for s, t in PRESETS[preset].items() if s in columns}
        titles.update(board.get("titles") or {})

        transitions = board.get("transitions")
        if transitions is not None and not isinstance(transitions, dict):
            raise ConfigError("board.transitions must be a mapping of column -> [columns]")

        cfg = cls(
            columns=[str(c) for c in columns],
            titles={str(k): str(v) for k, v in titles.items()},
            default_status=board.get("default_status"),
            transitions=transitions,
        )
        for key, attr in (("type", "gateway_type"), ("db_path", "db_path"), ("base_url", "base_url"),
                          ("api_key_env", "api_key_env")):
            if key in gateway:
                setattr(cfg, attr, str(gateway[key]))
        try:
            if "timeout" in gateway:
                cfg.timeout = float(gateway["timeout"])
            if "poll_interval" in gateway:
                cfg.poll_interval = float(gateway["poll_interval"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid gateway timing: {e}") from e
        if "level" in log_cfg:
            cfg.log_level = str(log_cfg["level"]).upper()
        return cfg.validate()

    @classmethod
    def load(cls, path: Optional[str] = None) -> "BoardConfig":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path or os.environ.get(CONFIG_ENV) or CONFIG_PATH).expanduser()
        if not cfg_path.exists():
            return cls().validate()
        try:
            with open(cfg_path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {cfg_path}: {e}") from e
        return cls.from_dict(raw)


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return value


def configure_logging(level: str = "INFO", name: str = "taskboard") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=f"%(asctime)s [{name}] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_gateway(config: BoardConfig) -> SyncGateway:
    """Instantiate the configured gateway."""
    if config.gateway_type == "memory":
        return InMemorySyncGateway()
    if config.gateway_type == "sqlite":
        return SQLiteSyncGateway(
            str(Path(config.db_path).expanduser()),
            poll_interval=config.poll_interval,
        )
    if config.gateway_type == "http":
        return HttpSyncGateway(
            config.base_url,
            api_key=config.api_key(),
            timeout=config.timeout,
            poll_interval=config.poll_interval,
        )
    raise ConfigError(f"Unknown gateway type '{config.gateway_type}'")


def build_executor(config: BoardConfig, gateway: Optional[SyncGateway] = None) -> ReorderExecutor:
    """Wire an empty store, the gateway and the policy into an executor."""
    return ReorderExecutor(
        TaskStore(),
        gateway or build_gateway(config),
        config.columns,
        default_status=config.default_status,
        policy=config.policy(),
    )
