"""
Platform configuration.

Loads configs/platform.yaml (or the file named by LOGDECK_CONFIG) on top of
built-in defaults, then applies environment overrides.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Optional

import dotenv
import yaml
from loguru import logger

dotenv.load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "configs" / "platform.yaml"

DEFAULTS: Dict[str, Any] = {
    "ingestion": {
        "enabled": True,
        "host": "0.0.0.0",
        "rate_limit": 1000,
        "max_message_size": 1024 * 1024,
        "batch_size": 100,
        "flush_interval": 1.0,
        "listeners": {
            "syslog_udp": {"protocol": "syslog", "transport": "udp", "port": 514, "enabled": True},
            "syslog_tcp": {"protocol": "syslog", "transport": "tcp", "port": 601, "enabled": True},
            "gelf_udp": {"protocol": "gelf", "transport": "udp", "port": 12201, "enabled": True},
            "gelf_tcp": {"protocol": "gelf", "transport": "tcp", "port": 12202, "enabled": True},
            "beats_tcp": {"protocol": "beats", "transport": "tcp", "port": 5044, "enabled": True},
            "fluent_http": {"protocol": "fluent", "transport": "http", "port": 9880, "enabled": True},
        },
    },
    "rate_limits": {
        "whitelist": ["127.0.0.1", "::1"],
        "auto_unblock_after": 3600,
        "windows": {
            "general": {"window_ms": 60000, "max": 100, "skip_successful_requests": False},
            "auth": {"window_ms": 900000, "max": 5, "skip_successful_requests": True},
            "api": {"window_ms": 60000, "max": 1000, "skip_successful_requests": False},
        },
    },
    "tracing": {
        "enabled": True,
        "service_name": "logdeck-api",
        "max_traces": 1000,
        "max_spans": 5000,
    },
    "retention": {
        "enabled": True,
        "interval_hours": 24,
        "audit_days": 90,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class PlatformConfig:
    """YAML-backed platform configuration with env overrides"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv("LOGDECK_CONFIG") or DEFAULT_CONFIG_PATH)
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        config = copy.deepcopy(DEFAULTS)
        try:
            with open(self.config_path, "r") as f:
                _deep_merge(config, yaml.safe_load(f) or {})
            logger.debug(f"[CONFIG] Loaded {self.config_path}")
        except FileNotFoundError:
            logger.warning(f"[CONFIG] {self.config_path} not found, using built-in defaults")

        self._apply_env_overrides(config)
        return config

    def _apply_env_overrides(self, config: Dict[str, Any]) -> None:
        ingestion = config["ingestion"]
        ingestion["enabled"] = env_flag("INGESTION_ENABLED", ingestion.get("enabled", True))
        if os.getenv("INGESTION_HOST"):
            ingestion["host"] = os.getenv("INGESTION_HOST")

        retention = config["retention"]
        retention["enabled"] = env_flag("RETENTION_ENABLED", retention.get("enabled", True))

        extra = [ip.strip() for ip in os.getenv("RATE_LIMIT_WHITELIST", "").split(",") if ip.strip()]
        whitelist = config["rate_limits"].setdefault("whitelist", [])
        for ip in extra:
            if ip not in whitelist:
                whitelist.append(ip)

    @property
    def ingestion(self) -> Dict[str, Any]:
        return self.config["ingestion"]

    @property
    def rate_limits(self) -> Dict[str, Any]:
        return self.config["rate_limits"]

    @property
    def tracing(self) -> Dict[str, Any]:
        return self.config["tracing"]

    @property
    def retention(self) -> Dict[str, Any]:
        return self.config["retention"]


# Global configuration instance
platform_config = PlatformConfig()
