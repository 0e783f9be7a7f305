"""Config loader — reads YAML, applies AUTOTRADE_* env var overrides."""

from __future__ import annotations

import os
from pathlib import Path

import yaml

from autotrade.config.schema import AppConfig

# env var -> (section, key)
_ENV_OVERRIDES = {
    "AUTOTRADE_LOG_LEVEL": ("logging", "level"),
    "AUTOTRADE_LOG_FORMAT": ("logging", "format"),
    "AUTOTRADE_GATEWAY_URL": ("gateway", "base_url"),
    "AUTOTRADE_GATEWAY_API_KEY": ("gateway", "api_key"),
    "AUTOTRADE_JOURNAL_URL": ("notifications", "journal_url"),
    "AUTOTRADE_FEED_URL": ("feed", "ws_url"),
}


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from a YAML file, then apply env var overrides.

    If *path* is None or the file doesn't exist, returns defaults.

    Environment variable overrides:
        AUTOTRADE_LOG_LEVEL        -> logging.level
        AUTOTRADE_LOG_FORMAT       -> logging.format
        AUTOTRADE_GATEWAY_URL      -> gateway.base_url (also selects the http gateway)
        AUTOTRADE_GATEWAY_API_KEY  -> gateway.api_key
        AUTOTRADE_JOURNAL_URL      -> notifications.journal_url
        AUTOTRADE_FEED_URL         -> feed.ws_url
    """
    data: dict = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p) as f:
                data = yaml.safe_load(f) or {}

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            data.setdefault(section, {})[key] = value

    if os.environ.get("AUTOTRADE_GATEWAY_URL"):
        data["gateway"]["kind"] = "http"

    return AppConfig.model_validate(data)
