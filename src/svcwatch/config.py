"""Configuration for svcwatch.

Settings come from an optional JSON file and a few environment overrides:

    SVCWATCH_CONFIG         path of the JSON config file
    SVCWATCH_POLL_INTERVAL  seconds between polls
    SVCWATCH_STORE          path of the persisted state file
"""

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from svcwatch.models import Scope

logger = logging.getLogger(__name__)


def default_config_dir() -> Path:
    """Return $XDG_CONFIG_HOME/svcwatch (~/.config/svcwatch by default)."""
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / "svcwatch"


class WatcherConfig(BaseModel):
    """Runtime settings for the watcher and its collaborators."""

    poll_interval: float = Field(default=3.0, ge=0.1)
    scopes: list[Scope] = Field(default_factory=lambda: [Scope.SYSTEM, Scope.USER])
    concurrent_scopes: bool = True
    query_timeout: float = Field(default=15.0, gt=0)
    change_log_limit: int = Field(default=500, ge=1)
    store_path: Path = Field(default_factory=lambda: default_config_dir() / "state.json")

    @field_validator("scopes")
    @classmethod
    def scopes_not_empty(cls, v: list[Scope]) -> list[Scope]:
        """Require at least one scope and drop duplicates, keeping order."""
        if not v:
            raise ValueError("at least one scope must be watched")
        return list(dict.fromkeys(v))


def load_config(path: Path | None = None) -> WatcherConfig:
    """
    Load configuration from a JSON file plus environment overrides.

    Args:
        path: Config file. Defaults to $SVCWATCH_CONFIG, then
            <config dir>/config.json. A missing file means defaults.

    Raises:
        ValueError: If the file or an override is invalid.
    """
    if path is None:
        env_path = os.environ.get("SVCWATCH_CONFIG")
        path = Path(env_path) if env_path else default_config_dir() / "config.json"

    data: dict = {}
    if path.exists():
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValueError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        logger.debug(f"Loaded config from {path}")

    interval = os.environ.get("SVCWATCH_POLL_INTERVAL")
    if interval:
        data["poll_interval"] = interval
    store = os.environ.get("SVCWATCH_STORE")
    if store:
        data["store_path"] = store

    try:
        return WatcherConfig(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration ({path}): {e}") from e
