"""Configuration system for the wallet broker.

Loads broker config from ``~/.wallet-broker/config.yaml`` (or an explicit
path), supports environment variable expansion, and provides the typed
settings every service reads its limits and timeouts from.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Environment-variable expansion helper
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


def _expand_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with their environment values.

    If the variable is not set the placeholder is left as-is so that
    validation can catch it later.
    """

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))

    return _ENV_VAR_RE.sub(_replace, value)


def _expand_env_recursive(obj: object) -> object:
    """Walk an arbitrary nested structure and expand env vars in strings."""
    if isinstance(obj, str):
        return _expand_env_vars(obj)
    if isinstance(obj, dict):
        return {k: _expand_env_recursive(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_recursive(item) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class LimitConfig(BaseModel):
    """A single fixed-window rate limit."""

    max_requests: int
    window_seconds: float = 60.0


class RateLimitConfig(BaseModel):
    """Per-origin limits for each request category."""

    connection: LimitConfig = Field(
        default_factory=lambda: LimitConfig(max_requests=5)
    )
    transaction: LimitConfig = Field(
        default_factory=lambda: LimitConfig(max_requests=10)
    )
    general: LimitConfig = Field(
        default_factory=lambda: LimitConfig(max_requests=100)
    )


class TimeoutConfig(BaseModel):
    """Deadlines (seconds) for flows that wait on a human or another context."""

    approval_seconds: float = 300.0     # connection approvals
    sign_seconds: float = 600.0         # sign message / transaction / PSBT
    compose_seconds: float = 600.0      # multi-step compose forms
    unlock_seconds: float = 300.0       # waiting for the user to unlock
    bus_seconds: float = 10.0           # one request/response round trip
    ui_strategy_seconds: float = 2.0    # per UI-opening strategy


class SecurityConfig(BaseModel):
    """Request validation and retention limits."""

    max_param_bytes: int = 1024 * 1024
    replay_window_seconds: float = 300.0
    stale_pending_seconds: float = 600.0
    connection_ttl_days: int = 0        # 0 = grants never expire
    handoff_max_age_seconds: float = 600.0
    max_pending_approvals: int = 10


class NetworkConfig(BaseModel):
    """Which chain the keychain adapter broadcasts to."""

    chain: str = "ethereum"
    rpc_url: Optional[str] = None       # overrides the chain default


class AnalyticsConfig(BaseModel):
    """Fire-and-forget counter sink."""

    enabled: bool = False
    endpoint: str = ""
    site_id: str = ""                   # ${ANALYTICS_SITE_ID}


class DatabaseConfig(BaseModel):
    """SQLite location. Relative paths resolve against ``data_dir``."""

    path: str = "broker.db"


class ServerConfig(BaseModel):
    """HTTP/WebSocket relay settings."""

    host: str = "127.0.0.1"
    port: int = 8430
    open_browser: bool = False
    # Bearer token for the approval UI; empty means a fresh one per process
    ui_token: str = ""
    # Extra origins allowed to open the UI socket besides the relay itself
    ui_origins: list[str] = Field(default_factory=list)

    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class BrokerConfig(BaseModel):
    """Root configuration object for the broker process."""

    name: str = "wallet-broker"
    data_dir: str = "~/.wallet-broker"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    def resolved_data_dir(self) -> Path:
        return Path(self.data_dir).expanduser()

    def database_path(self) -> Path:
        db_path = Path(self.database.path).expanduser()
        if db_path.is_absolute():
            return db_path
        return self.resolved_data_dir() / db_path

    def wallet_dir(self) -> Path:
        return self.resolved_data_dir() / "wallet"


# ---------------------------------------------------------------------------
# Public helpers
# ---------------------------------------------------------------------------


def default_config_path() -> Path:
    """Return the config path, honoring ``WALLET_BROKER_CONFIG`` when set."""
    override = os.environ.get("WALLET_BROKER_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path("~/.wallet-broker/config.yaml").expanduser()


def load_config(path: Path) -> BrokerConfig:
    """Load and validate a broker configuration from a YAML file.

    Environment variable placeholders (``${VAR}``) are expanded before
    validation. A missing file yields the defaults.
    """
    if not path.exists():
        return BrokerConfig()
    raw_text = path.read_text(encoding="utf-8")
    raw_data = yaml.safe_load(raw_text) or {}
    expanded = _expand_env_recursive(raw_data)
    return BrokerConfig.model_validate(expanded)


def save_config(config: BrokerConfig, path: Path) -> None:
    """Serialize a :class:`BrokerConfig` to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="python", exclude_none=True)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.dump(data, fh, default_flow_style=False, sort_keys=False)
