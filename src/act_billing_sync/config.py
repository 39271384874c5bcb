"""
Configuration for the Act! billing sync engine.

Settings come from a JSON config file, with environment variable
overrides. Every tunable the engine uses lives on SyncSettings so tests
and the CLI can build one explicitly.
"""

import json
import os
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


DEFAULT_API_BASE_URL = "https://apius.act.com/act.web.api"


class SyncSettings(BaseModel):
    """All tunables for one engine process."""

    database_url: str = "sqlite:///act_billing_sync.db"
    default_api_base_url: str = DEFAULT_API_BASE_URL

    # Rate limiting (Act! budget, conservative)
    rate_limit_calls: int = 100
    rate_limit_window_seconds: float = 60.0
    min_request_interval_seconds: float = 0.1
    max_window_wait_seconds: float = 0.0

    # Token lifecycle
    token_refresh_threshold_seconds: float = 50 * 60
    token_db_buffer_seconds: float = 10 * 60
    token_lifetime_seconds: float = 60 * 60

    # HTTP
    http_timeout_seconds: float = 30.0
    max_retries: int = 2

    # Pacing
    inter_tenant_delay_seconds: float = 2.0
    product_fetch_concurrency: int = 5
    product_fetch_batch_delay_seconds: float = 0.1
    record_batch_size: int = 50
    record_batch_delay_seconds: float = 0.1

    # Scheduling
    sync_interval_hours: float = 24.0

    # Vendor-side pricing settles after a PUT; reconfirm after this delay
    product_settle_enabled: bool = True
    product_settle_seconds: float = 1.0

    # Mapping
    billing_date_range_years: int = 2
    sync_only_billable_tasks: bool = True
    sync_tasks: bool = True


# Environment variable -> settings field
ENV_MAPPINGS = {
    "database_url": "ACT_SYNC_DATABASE_URL",
    "default_api_base_url": "ACT_SYNC_API_BASE_URL",
    "rate_limit_calls": "ACT_SYNC_RATE_LIMIT_CALLS",
    "http_timeout_seconds": "ACT_SYNC_HTTP_TIMEOUT",
    "max_retries": "ACT_SYNC_MAX_RETRIES",
    "inter_tenant_delay_seconds": "ACT_SYNC_INTER_TENANT_DELAY",
    "sync_interval_hours": "ACT_SYNC_INTERVAL_HOURS",
    "product_settle_enabled": "ACT_SYNC_PRODUCT_SETTLE",
    "sync_only_billable_tasks": "ACT_SYNC_ONLY_BILLABLE_TASKS",
    "sync_tasks": "ACT_SYNC_TASKS",
}


def get_config_path() -> Path:
    """Get the configuration file path."""
    return Path.home() / ".act-billing-sync" / "config.json"


def load_settings(path: str | Path | None = None) -> SyncSettings:
    """
    Load settings from file, with environment variable overrides.

    Priority:
    1. Environment variables (if set)
    2. Config file values
    3. Defaults
    """
    config: dict[str, Any] = {}

    config_path = Path(path) if path else get_config_path()
    if config_path.exists():
        with open(config_path) as f:
            config = json.load(f)
        logger.debug("Loaded config file", path=str(config_path))

    for config_key, env_var in ENV_MAPPINGS.items():
        env_value = os.environ.get(env_var)
        if env_value is not None:
            # Convert string booleans
            if env_value.lower() in ("true", "yes"):
                config[config_key] = True
            elif env_value.lower() in ("false", "no"):
                config[config_key] = False
            else:
                config[config_key] = env_value

    return SyncSettings.model_validate(config)


def save_settings(settings: SyncSettings, path: str | Path | None = None) -> Path:
    """Save settings to file. Returns the path written."""
    config_path = Path(path) if path else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        json.dump(settings.model_dump(), f, indent=2)

    # May contain a database URL with credentials
    os.chmod(config_path, 0o600)
    return config_path
