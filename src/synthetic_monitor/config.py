#!/usr/bin/env python3
"""
Configuration for the synthetic monitor.

Values resolve in order: dataclass defaults, then an optional YAML file,
then ``SYNTHETIC_*`` environment variables.
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "SYNTHETIC_"


@dataclass
class SyntheticConfig:
    """
    Runtime configuration for probing, persistence and the HTTP surface.

    ``db_path`` falls back to SYNTHETIC_DB_PATH, then to a file in the
    working directory.
    """
    db_path: Optional[str] = None
    probe_timeout_seconds: float = 10.0
    max_concurrency: int = 10
    health_check_timeout_seconds: float = 5.0
    history_retention_days: int = 30
    alert_limit: int = 100
    api_host: str = "0.0.0.0"
    api_port: int = 9090

    def __post_init__(self):
        if self.db_path is None:
            self.db_path = os.getenv("SYNTHETIC_DB_PATH", "synthetic_monitor.db")

        if self.probe_timeout_seconds <= 0:
            raise ConfigError("probe_timeout_seconds must be positive")
        if self.health_check_timeout_seconds <= 0:
            raise ConfigError("health_check_timeout_seconds must be positive")
        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be at least 1")
        if self.history_retention_days < 1:
            raise ConfigError("history_retention_days must be at least 1")
        if not 1 <= self.alert_limit <= 1000:
            raise ConfigError("alert_limit must be between 1 and 1000")
        if not 0 < self.api_port < 65536:
            raise ConfigError(f"api_port out of range: {self.api_port}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary format."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyntheticConfig":
        """Create from dictionary format, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown configuration keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_file(cls, config_path: str, overrides: Optional[Dict[str, Any]] = None) -> "SyntheticConfig":
        """Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML file. The top-level mapping may be
                nested under a ``synthetic_monitor`` key.
            overrides: Values applied on top of the file (e.g. from env).

        Returns:
            SyntheticConfig instance
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to load configuration: {e}")

        if not isinstance(data, dict):
            raise ConfigError("Configuration file must contain a mapping")
        data = data.get("synthetic_monitor", data) or {}
        if not isinstance(data, dict):
            raise ConfigError("synthetic_monitor section must be a mapping")
        data = dict(data, **(overrides or {}))
        return cls.from_dict(data)

    @staticmethod
    def env_overrides() -> Dict[str, Any]:
        """Collect SYNTHETIC_* environment variables converted to field types."""
        overrides: Dict[str, Any] = {}
        for f in fields(SyntheticConfig):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                if f.type in (int, "int"):
                    overrides[f.name] = int(raw)
                elif f.type in (float, "float"):
                    overrides[f.name] = float(raw)
                else:
                    overrides[f.name] = raw
            except ValueError:
                raise ConfigError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}")
        return overrides

    @classmethod
    def from_env(cls, config_path: Optional[str] = None) -> "SyntheticConfig":
        """Create configuration from environment variables.

        Environment variables:
            SYNTHETIC_CONFIG: Optional YAML file read before the variables below
            SYNTHETIC_DB_PATH: SQLite database file
            SYNTHETIC_PROBE_TIMEOUT_SECONDS: Per-probe timeout (default: 10)
            SYNTHETIC_MAX_CONCURRENCY: Concurrent probes per run (default: 10)
            SYNTHETIC_HEALTH_CHECK_TIMEOUT_SECONDS: Node health check timeout (default: 5)
            SYNTHETIC_HISTORY_RETENTION_DAYS: History retention (default: 30)
            SYNTHETIC_ALERT_LIMIT: Maximum alerts returned per query (default: 100)
            SYNTHETIC_API_HOST / SYNTHETIC_API_PORT: HTTP bind address
        """
        overrides = cls.env_overrides()
        config_path = config_path or os.getenv("SYNTHETIC_CONFIG")
        if config_path:
            return cls.from_file(config_path, overrides)
        return cls.from_dict(overrides)
