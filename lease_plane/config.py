"""
Lease Plane Centralized Configuration
=====================================

Single source of truth for all configuration values.
Reads from environment variables with sensible defaults.
"""

import json
import os
from typing import Any, Dict, List
from dataclasses import dataclass, field


@dataclass
class PanelConfig:
    """Pterodactyl Application API settings used for every remote call."""
    url: str = ""
    api_key: str = ""
    default_egg: int = 1
    docker_image: str = "ghcr.io/pterodactyl/yolks:java_21"
    startup: str = "java -Xms128M -Xmx{{SERVER_MEMORY}}M -jar {{SERVER_JARFILE}}"
    environment_json: str = "{}"
    timeout: float = 15.0

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.api_key)

    def default_environment(self) -> Dict[str, Any]:
        """Parse the default egg environment, rejecting anything but a JSON object."""
        try:
            parsed = json.loads(self.environment_json or "{}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid PTERODACTYL_DEFAULT_ENV JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError("PTERODACTYL_DEFAULT_ENV must be a JSON object")
        return parsed


@dataclass
class DatabaseConfig:
    url: str = ""
    min_pool_size: int = 2
    max_pool_size: int = 10

    @property
    def is_configured(self) -> bool:
        return bool(self.url)


@dataclass
class SweeperConfig:
    interval_seconds: int = 300  # 5 minutes
    grace_period_hours: int = 12
    enabled: bool = True


@dataclass
class LeasePlaneConfig:
    """Master configuration for the lease plane service."""

    panel: PanelConfig = field(default_factory=PanelConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)

    log_level: str = "INFO"
    log_format: str = "json"
    rate_limit: str = "10/minute"
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:5173"]
    )

    @classmethod
    def from_env(cls) -> "LeasePlaneConfig":
        """Load configuration from environment variables."""
        return cls(
            panel=PanelConfig(
                url=os.environ.get("PTERODACTYL_URL", ""),
                api_key=os.environ.get("PTERODACTYL_API_KEY", ""),
                default_egg=int(os.environ.get("PTERODACTYL_DEFAULT_EGG", "1")),
                docker_image=os.environ.get(
                    "PTERODACTYL_DEFAULT_DOCKER_IMAGE", "ghcr.io/pterodactyl/yolks:java_21"
                ),
                startup=os.environ.get(
                    "PTERODACTYL_DEFAULT_STARTUP",
                    "java -Xms128M -Xmx{{SERVER_MEMORY}}M -jar {{SERVER_JARFILE}}",
                ),
                environment_json=os.environ.get("PTERODACTYL_DEFAULT_ENV", "{}"),
                timeout=float(os.environ.get("PTERODACTYL_TIMEOUT", "15")),
            ),
            database=DatabaseConfig(
                url=os.environ.get("DATABASE_URL", ""),
                min_pool_size=int(os.environ.get("DATABASE_MIN_POOL", "2")),
                max_pool_size=int(os.environ.get("DATABASE_MAX_POOL", "10")),
            ),
            sweeper=SweeperConfig(
                interval_seconds=int(os.environ.get("SWEEPER_INTERVAL_SECONDS", "300")),
                grace_period_hours=int(os.environ.get("GRACE_PERIOD_HOURS", "12")),
                enabled=os.environ.get("SWEEPER_ENABLED", "true").lower() in ("1", "true", "yes"),
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "json"),
            rate_limit=os.environ.get("RATE_LIMIT", "10/minute"),
            cors_origins=os.environ.get(
                "CORS_ORIGINS", "http://localhost:5173"
            ).split(","),
        )
