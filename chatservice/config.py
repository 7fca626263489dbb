"""
Config loader for chatservice.

config.yaml is read once and cached. Lookup order for the file:
explicit path argument, then $CHATSERVICE_CONFIG, then config.yaml at the
repo root. Values may reference the environment as ${VAR} or
${VAR:-fallback}; a .env file next to the process is loaded first.

Operational sections missing from the file are filled from DEFAULTS so
callers can index them directly.
"""

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "CHATSERVICE_CONFIG"
REPO_CONFIG = Path(__file__).parent.parent / "config.yaml"

DEFAULTS: dict = {
    "server": {"host": "0.0.0.0", "port": 8080},
    "storage": {"type": "sqlite", "sqlite_path": "./data/chatservice.db"},
    "tokens": {"counter": "tiktoken"},
    "streaming": {"buffer_size": 16, "timeout": 300},
    "wiretap": {"enabled": True, "path": "./data/wire.jsonl"},
    "flight_recorder": {"enabled": True, "max_records": 1000, "retention_hours": 24},
    "logging": {"level": "INFO"},
}

_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

_config: dict | None = None


def _expand(value):
    """Substitute ${VAR} / ${VAR:-fallback} in every string, recursively."""
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), value)
    return value


def _overlay(base: dict, override: dict) -> dict:
    """Merge override onto base; nested dicts merge key by key."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _overlay(merged[key], value)
        else:
            merged[key] = value
    return merged


def config_path(path: Path | str | None = None) -> Path:
    """Resolve which config file would be loaded."""
    return Path(path or os.environ.get(CONFIG_ENV_VAR) or REPO_CONFIG)


def load_config(path: Path | str | None = None) -> dict:
    """Load, expand and cache the config. Later calls return the cache."""
    global _config
    if _config is not None:
        return _config

    source = config_path(path)
    if not source.exists():
        raise FileNotFoundError(f"Config not found: {source}")

    with open(source) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config {source} must be a mapping, got {type(raw).__name__}")

    _config = _overlay(DEFAULTS, _expand(raw))
    logger.debug("Loaded config from %s", source)
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    return _config if _config is not None else load_config()


def reset_config():
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None
