"""
Configuration for the sync client and server.

Client settings live in ~/.firewood/settings.yaml:

```yaml
sync:
  api_url: "https://firewood.example.com"
  api_token: "..."
  enabled: true
  data_dir: "~/.firewood/data"
  request_timeout: 30
```

Environment variables override the file:
FIREWOOD_API_URL, FIREWOOD_API_TOKEN, FIREWOOD_SYNC_ENABLED, FIREWOOD_DATA_DIR.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".firewood" / "settings.yaml"
DEFAULT_DATA_DIR = Path.home() / ".firewood" / "data"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, empty if the file is missing or unreadable."""
    if not path.exists():
        return {}

    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


@dataclass
class SyncSettings:
    """Client-side sync configuration."""

    api_url: str = ""
    api_token: str | None = None
    enabled: bool = False
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    request_timeout: float = 30.0
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    @property
    def is_configured(self) -> bool:
        """True once a server URL and a token are known."""
        return bool(self.api_url and self.api_token)

    @property
    def queue_path(self) -> Path:
        return self.data_dir / "sync" / "queue.jsonl"

    @property
    def cursor_path(self) -> Path:
        return self.data_dir / "sync" / "cursor.json"

    @classmethod
    def load(cls, config_path: Path | None = None) -> SyncSettings:
        """Load settings from YAML, then apply environment overrides.

        Args:
            config_path: Path to settings.yaml. Defaults to ~/.firewood/settings.yaml
        """
        path = config_path or DEFAULT_CONFIG_PATH
        section = _load_yaml(path).get("sync") or {}

        settings = cls(config_path=path)
        if "api_url" in section:
            settings.api_url = str(section["api_url"] or "")
        if "api_token" in section:
            settings.api_token = section["api_token"]
        if "enabled" in section:
            settings.enabled = _parse_bool(section["enabled"])
        if section.get("data_dir"):
            settings.data_dir = Path(section["data_dir"]).expanduser()
        if "request_timeout" in section:
            settings.request_timeout = float(section["request_timeout"])

        settings.apply_env()
        return settings

    def apply_env(self) -> None:
        """Override fields from FIREWOOD_* environment variables."""
        env = os.environ
        if env.get("FIREWOOD_API_URL"):
            self.api_url = env["FIREWOOD_API_URL"]
        if env.get("FIREWOOD_API_TOKEN"):
            self.api_token = env["FIREWOOD_API_TOKEN"]
        if "FIREWOOD_SYNC_ENABLED" in env:
            self.enabled = _parse_bool(env["FIREWOOD_SYNC_ENABLED"])
        if env.get("FIREWOOD_DATA_DIR"):
            self.data_dir = Path(env["FIREWOOD_DATA_DIR"]).expanduser()

    def save(self) -> None:
        """Write the sync section back, preserving other sections of the file."""
        config = _load_yaml(self.config_path)
        config["sync"] = {
            "api_url": self.api_url,
            "api_token": self.api_token,
            "enabled": self.enabled,
            "data_dir": str(self.data_dir),
            "request_timeout": self.request_timeout,
        }

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(yaml.safe_dump(config, default_flow_style=False))


@dataclass
class ServerConfig:
    """Sync server process configuration."""

    db_path: str = "firewood.db"
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Create config from environment variables."""
        return cls(
            db_path=os.environ.get("FIREWOOD_SERVER_DB", "firewood.db"),
            host=os.environ.get("FIREWOOD_SERVER_HOST", "0.0.0.0"),
            port=int(os.environ.get("FIREWOOD_SERVER_PORT", "8080")),
        )
