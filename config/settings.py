"""
Configuration loader for the flow engine.
Reads settings from YAML with ${VAR} and ${VAR:-default} environment substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class EngineConfig:
    lease_seconds: float = 30.0             # claim lease, sized to the worst-case turn
    claim_wait_seconds: float = 0.25        # how long a caller polls for a held claim before BUSY
    claim_poll_interval: float = 0.05
    max_steps_per_turn: int = 50            # loop guard for cycles without a suspension point
    unmatched_reply_policy: str = "complete"  # "complete" | "fail"
    processed_event_window: int = 50        # remembered event ids per session (dedup)
    trace_limit: int = 100                  # executed steps kept per session


@dataclass
class DeliveryConfig:
    max_attempts: int = 3
    backoff_base: float = 0.5               # seconds, exponential
    backoff_max: float = 4.0
    outbound_url: str = ""                  # empty → recording deliverer (no transport)
    auth_token: str = ""
    timeout_seconds: float = 10.0


@dataclass
class IntegrationConfig:
    type: str = "rest"                      # rest | mock
    base_url: str = ""
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 8.0
    auth_type: str = "none"                 # bearer | api_key | none
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./flow_engine.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    pool_size: int = 10
    max_overflow: int = 20
    pool_recycle: int = 1800
    sqlite_busy_timeout: float = 5.0                   # seconds a writer waits for the file lock


@dataclass
class Settings:
    app_name: str = "FlowEngine"
    debug: bool = False
    engine: EngineConfig = field(default_factory=EngineConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    flows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def integration_ceiling_seconds(self) -> float:
        """Worst-case time one apiCall node can hold a turn."""
        cfg = self.integration
        return _retry_ceiling(cfg.timeout_seconds, cfg.max_attempts, cfg.backoff_base, cfg.backoff_max)

    @property
    def delivery_ceiling_seconds(self) -> float:
        """Worst-case time one delivering node (message, quickReply, handoff) can hold a turn."""
        cfg = self.delivery
        return _retry_ceiling(cfg.timeout_seconds, cfg.max_attempts, cfg.backoff_base, cfg.backoff_max)

    @property
    def node_ceiling_seconds(self) -> float:
        """Slowest single node. The claim lease is renewed before every node, so it must cover this."""
        return max(self.integration_ceiling_seconds, self.delivery_ceiling_seconds)


def _retry_ceiling(timeout: float, attempts: int, backoff_base: float, backoff_max: float) -> float:
    attempts = max(attempts, 1)
    backoff = sum(min(backoff_base * (2 ** i), backoff_max) for i in range(attempts - 1))
    return timeout * attempts + backoff


_settings: Optional[Settings] = None

_SECTIONS = {
    "engine": EngineConfig,
    "delivery": DeliveryConfig,
    "integration": IntegrationConfig,
    "database": DatabaseConfig,
}

_ENV_PATTERN = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _env_lookup(match: re.Match) -> str:
    name, default = match.group(1), match.group(2)
    if name in os.environ:
        return os.environ[name]
    return default if default is not None else match.group(0)


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} and ${VAR:-default} in every string of a parsed YAML tree."""
    if isinstance(value, str):
        return _ENV_PATTERN.sub(_env_lookup, value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML mapping; unknown keys are ignored."""
    raw = raw or {}
    return cls(**{k: v for k, v in raw.items() if k in cls.__dataclass_fields__})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML (FLOWENGINE_CONFIG, else the bundled settings.yaml)."""
    global _settings

    path = Path(config_path or os.environ.get(
        "FLOWENGINE_CONFIG", Path(__file__).parent / "settings.yaml",
    ))
    raw: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            raw = _expand_env(yaml.safe_load(f) or {})

    settings = Settings(
        app_name=raw.get("app_name", Settings.app_name),
        debug=raw.get("debug", Settings.debug),
        flows=list(raw.get("flows") or []),
        **{name: _section(cls, raw.get(name)) for name, cls in _SECTIONS.items()},
    )

    policy = settings.engine.unmatched_reply_policy
    if policy not in ("complete", "fail"):
        raise ValueError(
            f"engine.unmatched_reply_policy must be 'complete' or 'fail', got '{policy}'"
        )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
