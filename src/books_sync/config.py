"""
Engine configuration.

Settings are read from a JSON file and then overridden by environment
variables, so a deployment can keep secrets out of the file:

    export BOOKS_SYNC_ORGANIZATION_ID=10234695
    export BOOKS_SYNC_ENCRYPTION_KEY=...
    export BOOKS_SYNC_STOP_ON_LOCKED_CONFLICT=false
"""

import json
import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from books_sync.client import DEFAULT_BASE_URL
from books_sync.exceptions import ConfigurationError
from books_sync.token_manager import DEFAULT_TOKEN_URL

DEFAULT_STATE_DIR = Path.home() / ".books-sync"
CONFIG_FILENAME = "config.json"


class ApiSettings(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    token_url: str = DEFAULT_TOKEN_URL
    organization_id: str = ""
    auth_scheme: str = "Zoho-oauthtoken"
    timeout_seconds: float = Field(default=30.0, gt=0)
    requests_per_minute: int = Field(default=100, gt=0)
    window_seconds: float = Field(default=60.0, gt=0)
    rate_limit_blocking: bool = True
    max_rate_wait_seconds: float | None = None


class TriggerSettings(BaseModel):
    """Local record statuses that start each kind of sync."""

    sync_draft: str = "processing"
    sync_submit: str = "completed"
    create_credit_note: str = "refunded"
    auto_apply_payment: bool = True


class ContactMatchKey(str, Enum):
    EMAIL = "email"
    COMPANY = "company"
    NAME = "name"


class SyncSettings(BaseModel):
    # True aborts on drift against a paid/void invoice; False skips the
    # invoice update and still applies payment.
    stop_on_locked_conflict: bool = True
    contact_match_key: ContactMatchKey = ContactMatchKey.EMAIL
    lock_wait_seconds: float = Field(default=0.0, ge=0)
    submit_draft_before_payment: bool = True
    apply_bank_fees: bool = True
    create_cash_refund: bool = True
    deposit_account_id: str | None = None
    integrity_tolerance: float = Field(default=0.01, ge=0)


class RetryMode(str, Enum):
    MAX_RETRIES = "max_retries"
    INDEFINITE = "indefinite"
    MANUAL = "manual"


class RetrySettings(BaseModel):
    mode: RetryMode = RetryMode.MAX_RETRIES
    max_count: int = Field(default=5, ge=0)
    backoff_minutes: float = Field(default=15.0, gt=0)
    backoff_ceiling_minutes: float = Field(default=1440.0, gt=0)
    batch_size: int = Field(default=10, gt=0)
    interval_minutes: float = Field(default=15.0, gt=0)


class ReconciliationSettings(BaseModel):
    amount_tolerance: float = Field(default=0.05, ge=0)
    stale_report_minutes: int = Field(default=30, gt=0)
    notify_on_discrepancy_only: bool = True
    retention_days: int = Field(default=90, gt=0)


class PaymentModeMapping(BaseModel):
    """Where payments from one local gateway land remotely."""

    mode: str
    account_id: str | None = None
    fee_account_id: str | None = None


class MappingSettings(BaseModel):
    """Local-to-remote lookups consumed by the entity services."""

    # local field name (or "meta:<key>") -> remote custom field id
    fields: dict[str, str] = Field(default_factory=dict)
    # local SKU -> remote item id
    items: dict[str, str] = Field(default_factory=dict)
    # local payment method -> remote payment mode/account
    payment_modes: dict[str, PaymentModeMapping] = Field(default_factory=dict)


class Settings(BaseModel):
    api: ApiSettings = Field(default_factory=ApiSettings)
    triggers: TriggerSettings = Field(default_factory=TriggerSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    mapping: MappingSettings = Field(default_factory=MappingSettings)

    # None keeps all state in memory
    state_dir: Path | None = DEFAULT_STATE_DIR
    encryption_key: str | None = None
    log_level: str = "INFO"
    log_json: bool = False

    def state_path(self, name: str) -> Path | None:
        if self.state_dir is None:
            return None
        return Path(self.state_dir).expanduser() / name


# Environment variable -> (section, key); section None means top level
ENV_MAPPINGS: dict[str, tuple[str | None, str]] = {
    "BOOKS_SYNC_BASE_URL": ("api", "base_url"),
    "BOOKS_SYNC_TOKEN_URL": ("api", "token_url"),
    "BOOKS_SYNC_ORGANIZATION_ID": ("api", "organization_id"),
    "BOOKS_SYNC_REQUESTS_PER_MINUTE": ("api", "requests_per_minute"),
    "BOOKS_SYNC_RATE_LIMIT_BLOCKING": ("api", "rate_limit_blocking"),
    "BOOKS_SYNC_STOP_ON_LOCKED_CONFLICT": ("sync", "stop_on_locked_conflict"),
    "BOOKS_SYNC_CONTACT_MATCH_KEY": ("sync", "contact_match_key"),
    "BOOKS_SYNC_DEPOSIT_ACCOUNT_ID": ("sync", "deposit_account_id"),
    "BOOKS_SYNC_RETRY_MODE": ("retry", "mode"),
    "BOOKS_SYNC_RETRY_MAX_COUNT": ("retry", "max_count"),
    "BOOKS_SYNC_AMOUNT_TOLERANCE": ("reconciliation", "amount_tolerance"),
    "BOOKS_SYNC_STATE_DIR": (None, "state_dir"),
    "BOOKS_SYNC_ENCRYPTION_KEY": (None, "encryption_key"),
    "BOOKS_SYNC_LOG_LEVEL": (None, "log_level"),
    "BOOKS_SYNC_LOG_JSON": (None, "log_json"),
}


def _parse_env_value(value: str) -> Any:
    """Convert string booleans; leave everything else for pydantic."""
    if value.lower() in ("true", "1", "yes"):
        return True
    if value.lower() in ("false", "0", "no"):
        return False
    return value


def get_config_path(state_dir: Path | None = None) -> Path:
    return Path(state_dir or DEFAULT_STATE_DIR).expanduser() / CONFIG_FILENAME


def load_settings(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> Settings:
    """
    Load settings from file, with environment variable overrides.

    Priority:
    1. Environment variables
    2. Config file values
    3. Defaults

    Raises:
        ConfigurationError: Unreadable file or invalid values
    """
    environ = os.environ if environ is None else environ
    config: dict[str, Any] = {}

    config_path = Path(path) if path else get_config_path(environ.get("BOOKS_SYNC_STATE_DIR"))
    if config_path.exists():
        try:
            with open(config_path) as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {config_path}: {e}")

    for env_var, (section, key) in ENV_MAPPINGS.items():
        raw = environ.get(env_var)
        if raw is None:
            continue
        # Numeric-looking strings must stay strings for ids
        value = raw if key in ("organization_id", "deposit_account_id") else _parse_env_value(raw)
        if section is None:
            config[key] = value
        else:
            config.setdefault(section, {})[key] = value

    try:
        return Settings.model_validate(config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")


def save_settings(settings: Settings, path: str | Path | None = None) -> Path:
    """Write settings atomically; the file may hold the encryption key."""
    config_path = Path(path) if path else get_config_path(settings.state_dir)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = config_path.with_suffix(".tmp")
    with open(temp_file, "w") as f:
        json.dump(settings.model_dump(mode="json"), f, indent=2)
    os.chmod(temp_file, 0o600)
    temp_file.replace(config_path)

    return config_path
