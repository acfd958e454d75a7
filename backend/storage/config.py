"""Global app configuration (matching thresholds, Discord sync, export)."""

import json
from pathlib import Path
from typing import Any

from character_manager.identity import MatchThresholds

from .core import data_dir

_CONFIG_DEFAULTS: dict[str, Any] = {
    "auto_accept_confidence": 0.9,
    "alias_min_confidence": 0.5,
    "discord_page_size": 100,
    "discord_max_pages": 10,
    "discord_api_base": "https://discord.com/api/v10",
    "export_sorted": True,
}


def _config_path() -> Path:
    return data_dir() / "config.json"


def get_config() -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config = dict(_CONFIG_DEFAULTS)
    path = _config_path()
    if path.is_file():
        stored = json.loads(path.read_text())
        for key in _CONFIG_DEFAULTS:
            if key in stored:
                config[key] = stored[key]
    return config


def update_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Merge known fields into config and persist. Returns full config.

    Unknown keys are ignored. Raises ValueError if the thresholds fall
    outside [0, 1] or a page setting is not a positive integer.
    """
    config = get_config()
    for key in _CONFIG_DEFAULTS:
        if key in fields:
            config[key] = fields[key]

    match_thresholds(config)
    for key in ("discord_page_size", "discord_max_pages"):
        if not isinstance(config[key], int) or config[key] < 1:
            raise ValueError(f"{key} must be a positive integer")
    if not 1 <= config["discord_page_size"] <= 100:
        raise ValueError("discord_page_size must be between 1 and 100")

    _config_path().write_text(json.dumps(config, indent=2))
    return config


def match_thresholds(config: dict[str, Any] | None = None) -> MatchThresholds:
    """Build resolver thresholds from config. Raises ValidationError when out of range."""
    config = config or get_config()
    return MatchThresholds(
        auto_accept=config["auto_accept_confidence"],
        alias_reuse=config["alias_min_confidence"],
    )
