"""YAML + .env configuration loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Built-in values; config.yaml only needs to list what it changes
DEFAULTS: dict[str, dict[str, Any]] = {
    "pricing": {"currency": "EGP", "service_fee_rate": 0.10, "tax_rate": 0.05},
    "booking": {"free_cancellation_hours": 24, "payment_timeout_minutes": 30, "draft_ttl_minutes": 20},
    "availability": {"refresh_seconds": 30, "cache_seconds": 30},
    "payments": {
        "base_url": "https://secure.paytabs.com",
        "return_url": None,
        "callback_url": None,
        "timeout_seconds": 30,
    },
    "scheduler": {"payment_sweep_interval": 5, "stay_advance_interval": 60},
}


def _find_project_root() -> Path:
    """Walk up from this file to find the directory containing config.yaml."""
    current = Path(__file__).resolve().parent
    for _ in range(10):
        if (current / "config.yaml").exists():
            return current
        current = current.parent
    # Fallback to cwd
    return Path.cwd()


PROJECT_ROOT = _find_project_root()


def load_env() -> None:
    """Load .env file from project root."""
    load_dotenv(PROJECT_ROOT / ".env")


def load_yaml_config() -> dict[str, Any]:
    """Load config.yaml (or the file named by ``STAYBOOK_CONFIG``)."""
    override = os.environ.get("STAYBOOK_CONFIG")
    config_path = Path(override) if override else PROJECT_ROOT / "config.yaml"
    if not config_path.exists():
        if override:
            raise FileNotFoundError(f"Config file not found at {config_path}")
        logger.warning("No config.yaml at %s, using built-in defaults", config_path)
        return {}
    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def get_section(name: str) -> dict[str, Any]:
    """One config section layered over its defaults."""
    merged = dict(DEFAULTS.get(name, {}))
    merged.update(settings.get(name) or {})
    return merged


def get_env(key: str, default: str | None = None) -> str | None:
    """Get an environment variable."""
    return os.environ.get(key, default)


def get_env_required(key: str) -> str:
    """Get a required environment variable or raise."""
    val = os.environ.get(key)
    if val is None:
        raise RuntimeError(f"Required environment variable {key!r} is not set")
    return val


def get_database_url() -> str:
    """Return the database URL, defaulting to a local SQLite file."""
    default = f"sqlite:///{PROJECT_ROOT / 'staybook.db'}"
    return get_env("DATABASE_URL", default)


# Load on import
load_env()
settings: dict[str, Any] = load_yaml_config()
