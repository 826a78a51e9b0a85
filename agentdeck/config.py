import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
import logging

from typing import Any, Dict, List, Optional

import yaml  # type: ignore
from dotenv import load_dotenv  # type: ignore

logger = logging.getLogger(__name__)

PACKAGE_CONFIG_PATH = Path(__file__).parent / "config.yml"


def deep_merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = deep_merge_dicts(dict(base.get(key, {})), value)
        else:
            base[key] = value
    return base


def get_user_config_dir() -> Path:
    if os.name == 'posix':
        base = Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config'))
    else:
        base = Path(os.environ.get('APPDATA', Path.home() / 'AppData' / 'Roaming'))
    return base / 'agentdeck'


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Error loading config {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config {path}: top level is not a mapping")
        return {}
    return data


def load_env_files() -> None:
    """Load ``~/.config/agentdeck/.env`` then the nearest project ``.env``."""
    user_env_path = get_user_config_dir() / '.env'
    if user_env_path.exists():
        load_dotenv(dotenv_path=str(user_env_path), override=False)
    load_dotenv(override=False)


def load_config(cwd: Optional[Path] = None) -> Dict[str, Any]:
    """Load configuration by merging multiple locations with clear precedence.

    Precedence (lowest → highest):
      1. Package default (agentdeck/config.yml)
      2. User config (~/.config/agentdeck/config.yml)
      3. Project config (<cwd>/.agentdeck/config.yml)
      4. Explicit override via AGENTDECK_CONFIG_PATH
    """
    merged: Dict[str, Any] = {}

    layers: List[Path] = [
        PACKAGE_CONFIG_PATH,
        get_user_config_dir() / 'config.yml',
        Path(cwd or os.getcwd()) / '.agentdeck' / 'config.yml',
    ]
    override = os.getenv('AGENTDECK_CONFIG_PATH')
    if override:
        layers.append(Path(override).expanduser())

    for path in layers:
        if path.exists():
            merged = deep_merge_dicts(merged, _read_yaml(path))
            logger.debug(f"Loaded config layer: {path}")

    return merged


@dataclass
class SessionConfig:
    restore_window_hours: float = 24.0
    turn_lock_timeout: Optional[float] = 0.0
    task_preview_chars: int = 50

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        timeout = data.get("turn_lock_timeout", 0.0)
        return cls(
            restore_window_hours=float(data.get("restore_window_hours", 24)),
            turn_lock_timeout=None if timeout is None else float(timeout),
            task_preview_chars=int(data.get("task_preview_chars", 50)),
        )


@dataclass
class StreamingConfig:
    max_marker_bytes: int = 65536

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StreamingConfig":
        return cls(max_marker_bytes=int(data.get("max_marker_bytes", 65536)))


@dataclass
class CheckpointConfig:
    agent_types: List[str] = field(default_factory=lambda: ["claude", "gemini"])
    default_agent_type: str = "claude"
    min_title_length: int = 3
    min_description_length: int = 10
    max_tag_length: int = 50
    recommended_summary_length: int = 20
    recent_days: int = 7
    recommendation_threshold: float = 0.7
    preview_chars: int = 150
    reconcile_on_startup: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointConfig":
        defaults = cls()
        return cls(
            agent_types=list(data.get("agent_types") or defaults.agent_types),
            default_agent_type=data.get("default_agent_type", defaults.default_agent_type),
            min_title_length=int(data.get("min_title_length", defaults.min_title_length)),
            min_description_length=int(data.get("min_description_length", defaults.min_description_length)),
            max_tag_length=int(data.get("max_tag_length", defaults.max_tag_length)),
            recommended_summary_length=int(
                data.get("recommended_summary_length", defaults.recommended_summary_length)
            ),
            recent_days=int(data.get("recent_days", defaults.recent_days)),
            recommendation_threshold=float(
                data.get("recommendation_threshold", defaults.recommendation_threshold)
            ),
            preview_chars=int(data.get("preview_chars", defaults.preview_chars)),
            reconcile_on_startup=bool(data.get("reconcile_on_startup", defaults.reconcile_on_startup)),
        )


@dataclass
class BackendConfig:
    command: List[str] = field(
        default_factory=lambda: ["claude", "--print", "--output-format", "stream-json", "--verbose"]
    )
    timeout_seconds: float = 300.0
    history_window: int = 10
    retry_attempts: int = 3

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackendConfig":
        defaults = cls()
        command = os.getenv("AGENTDECK_BACKEND_COMMAND") or data.get("command") or defaults.command
        if isinstance(command, str):
            command = shlex.split(command)
        return cls(
            command=list(command),
            timeout_seconds=float(data.get("timeout_seconds", defaults.timeout_seconds)),
            history_window=int(data.get("history_window", defaults.history_window)),
            retry_attempts=int(data.get("retry_attempts", defaults.retry_attempts)),
        )


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        origins = os.getenv("AGENTDECK_CORS_ORIGINS")
        if origins:
            cors_origins = [o.strip() for o in origins.split(",") if o.strip()]
        else:
            cors_origins = list(data.get("cors_origins") or ["http://localhost:3000"])
        return cls(
            host=os.getenv("HOST", data.get("host", "127.0.0.1")),
            port=int(os.getenv("PORT", data.get("port", 8000))),
            cors_origins=cors_origins,
        )


@dataclass
class Config:
    storage_path: Path = field(
        default_factory=lambda: Path("~/.agentdeck/storage").expanduser()
    )
    sessions: SessionConfig = field(default_factory=SessionConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    log_level: str = "INFO"
    log_file: str = "agentdeck.log"

    @property
    def workspaces_path(self) -> Path:
        return self.storage_path / "workspaces"

    @property
    def checkpoints_path(self) -> Path:
        return self.storage_path / "checkpoints"

    @property
    def logs_path(self) -> Path:
        return self.storage_path / "logs"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        paths = data.get("paths") or {}
        logging_cfg = data.get("logging") or {}
        storage = os.getenv("AGENTDECK_STORAGE") or paths.get("storage") or "~/.agentdeck/storage"
        return cls(
            storage_path=Path(storage).expanduser(),
            sessions=SessionConfig.from_dict(data.get("sessions") or {}),
            streaming=StreamingConfig.from_dict(data.get("streaming") or {}),
            checkpoints=CheckpointConfig.from_dict(data.get("checkpoints") or {}),
            backend=BackendConfig.from_dict(data.get("backend") or {}),
            server=ServerConfig.from_dict(data.get("server") or {}),
            log_level=os.getenv("AGENTDECK_LOG_LEVEL", logging_cfg.get("level", "INFO")),
            log_file=logging_cfg.get("file", "agentdeck.log"),
        )

    @classmethod
    def load_config(cls, config_path: Optional[Path] = None) -> "Config":
        """Load the effective config.

        With no ``config_path`` the layered resolver in ``load_config()`` is
        used; otherwise the given file is merged over the package defaults.
        """
        load_env_files()
        if config_path is None:
            data = load_config()
        else:
            data = deep_merge_dicts(_read_yaml(PACKAGE_CONFIG_PATH), _read_yaml(Path(config_path)))
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "storage_path": str(self.storage_path),
            "sessions": {
                "restore_window_hours": self.sessions.restore_window_hours,
                "turn_lock_timeout": self.sessions.turn_lock_timeout,
            },
            "checkpoints": {
                "agent_types": self.checkpoints.agent_types,
                "recent_days": self.checkpoints.recent_days,
            },
            "backend": {
                "command": self.backend.command,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "log_level": self.log_level,
        }
