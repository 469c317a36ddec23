#region Imports
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from lunasync.config.user_config import get_app_data_dir
from lunasync.sync.entities import EPOCH, parse_timestamp
from lunasync.sync.exceptions import ConfigError, MissingRemoteIdError
#endregion


#region Constants
SYNC_CONFIG_FILE = "sync_config.json"
DEFAULT_SYNC_INTERVAL = 300  # seconds

logger = logging.getLogger(__name__)
#endregion


#region Data Structure

@dataclass
class Credentials:
    """GitHub account used for the sync Gist. The token is never written to disk here."""

    username: str = ""
    token: str = ""


@dataclass
class SyncConfig:
    """
    Persisted sync settings.

    ``last_sync_time`` only moves after a fully successful sync.
    ``remote_id`` is assigned by GitHub when the Gist is created and only
    replaced when the Gist had to be recreated.
    """

    enabled: bool = False
    last_sync_time: Optional[datetime] = None
    sync_interval: int = DEFAULT_SYNC_INTERVAL
    remote_id: Optional[str] = None
    credentials: Credentials = field(default_factory=Credentials)
    last_synced_entity_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "sync_interval": self.sync_interval,
            "remote_id": self.remote_id,
            "username": self.credentials.username,
            "last_synced_entity_ids": list(self.last_synced_entity_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncConfig":
        defaults = cls()
        last_sync = data.get("last_sync_time")
        last_sync_time = parse_timestamp(last_sync) if last_sync else None
        if last_sync_time == EPOCH:
            last_sync_time = None

        interval = data.get("sync_interval")
        if not isinstance(interval, int) or isinstance(interval, bool) or interval <= 0:
            interval = defaults.sync_interval

        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            last_sync_time=last_sync_time,
            sync_interval=interval,
            remote_id=data.get("remote_id") or None,
            credentials=Credentials(username=data.get("username") or ""),
            last_synced_entity_ids=list(data.get("last_synced_entity_ids") or []),
        )

#endregion


#region Validation

def validate_sync_config(config: SyncConfig, require_remote_id: bool = False) -> None:
    """
    Check that the config can be used before touching the network.

    Args:
        config: Config to check
        require_remote_id: Whether the operation needs an existing Gist

    Raises:
        ConfigError: If username or token is empty
        MissingRemoteIdError: If a Gist ID is required but not configured
    """
    missing = []
    if not config.credentials.username.strip():
        missing.append("GitHub username")
    if not config.credentials.token.strip():
        missing.append("GitHub token")
    if missing:
        raise ConfigError(
            f"Sync is not configured: missing {' and '.join(missing)}. "
            "Run: lunasync gist setup"
        )

    if require_remote_id and not (config.remote_id or "").strip():
        raise MissingRemoteIdError("No Gist ID configured. Upload once to create the Gist.")

#endregion


#region File Operations

def _get_sync_config_path() -> Path:
    """Get the path to the sync config JSON file."""
    return get_app_data_dir() / SYNC_CONFIG_FILE


def load_sync_config(path: Optional[Path] = None) -> SyncConfig:
    """
    Load sync settings from disk.

    Missing or unreadable files yield the defaults.

    Args:
        path: Config file (default: <app data dir>/sync_config.json)

    Returns:
        SyncConfig (credentials.token left empty)
    """
    path = path or _get_sync_config_path()

    if not path.exists():
        return SyncConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        logger.warning("Ignoring unreadable sync config %s: %s", path, e)
        return SyncConfig()

    if not isinstance(data, dict):
        return SyncConfig()
    return SyncConfig.from_dict(data)


def save_sync_config(config: SyncConfig, path: Optional[Path] = None) -> None:
    """
    Save sync settings to disk.

    Args:
        config: Settings to store
        path: Config file (default: <app data dir>/sync_config.json)
    """
    path = path or _get_sync_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)

#endregion
