"""Configuration loading and validation"""

import os
import re
from typing import Any, Dict, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, field_validator

from .constants import DEFAULT_LOG_FILE, DEFAULT_UPSTREAM_BASE

DEFAULT_CONFIG_PATH = "config.yaml"


class ServeConfig(BaseModel):
    """Listener configuration"""

    host: str = "0.0.0.0"
    port: int = 5000
    auto_port: bool = True  # try the next port when the configured one is busy
    port_retries: int = 10
    debug: bool = False


class UpstreamConfig(BaseModel):
    """Upstream API target"""

    base_url: str = DEFAULT_UPSTREAM_BASE
    route_prefix: str = ""
    timeout: Optional[float] = None  # seconds; None leaves long streams unbounded

    @field_validator("base_url", mode="before")
    @classmethod
    def _strip_base_url(cls, value: Any) -> Any:
        if value is None:
            return DEFAULT_UPSTREAM_BASE
        if isinstance(value, str):
            value = value.strip().rstrip("/")
            return value or DEFAULT_UPSTREAM_BASE
        return value

    @field_validator("route_prefix", mode="before")
    @classmethod
    def _normalize_prefix(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, str):
            value = value.strip().rstrip("/")
            if value and not value.startswith("/"):
                value = f"/{value}"
        return value


class LogConfig(BaseModel):
    """Record sink configuration"""

    log_file: str = DEFAULT_LOG_FILE
    raw_body: bool = True  # include upstream response bodies in response records


class Config(BaseModel):
    """Main configuration"""

    serve: ServeConfig = ServeConfig()
    upstream: UpstreamConfig = UpstreamConfig()
    log: LogConfig = LogConfig()

    @property
    def upstream_base_url(self) -> str:
        return self.upstream.base_url

    @property
    def route_prefix(self) -> str:
        return self.upstream.route_prefix

    @property
    def raw_body_logging_enabled(self) -> bool:
        return self.log.raw_body


# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "PORT": ("serve", "port"),
    "AUTO_PORT": ("serve", "auto_port"),
    "API_BASE": ("upstream", "base_url"),
    "ROUTE_PREFIX": ("upstream", "route_prefix"),
    "UPSTREAM_TIMEOUT": ("upstream", "timeout"),
    "LOG_FILE": ("log", "log_file"),
    "LOG_RAW_BODY": ("log", "raw_body"),
}


def substitute_env_vars(value: Any) -> Any:
    """Recursively substitute environment variables in configuration values

    Supports ${VAR_NAME} syntax for environment variable substitution
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)

        for var_name in matches:
            env_value = os.getenv(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)

        return value
    elif isinstance(value, dict):
        return {k: substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [substitute_env_vars(item) for item in value]
    else:
        return value


def apply_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay non-empty environment variables onto raw config data."""
    merged = {
        section: dict(values) if isinstance(values, dict) else values
        for section, values in config_data.items()
    }
    for env_name, (section, field) in ENV_OVERRIDES.items():
        env_value = os.getenv(env_name)
        if env_value is None or not env_value.strip():
            continue
        target = merged.setdefault(section, {})
        if not isinstance(target, dict):
            target = merged[section] = {}
        target[field] = env_value.strip()
    return merged


def _load_env_file(env_file: Optional[str]) -> None:
    if env_file:
        env_path = os.path.expanduser(env_file)
        if not os.path.exists(env_path):
            raise FileNotFoundError(f"Environment file not found: {env_file}")
        load_dotenv(dotenv_path=env_path)
        return
    # Prefer searching from current working directory for local runs.
    cwd_env_file = find_dotenv(usecwd=True)
    if cwd_env_file:
        load_dotenv(dotenv_path=cwd_env_file)


def load_config(
    config_path: Optional[str] = None, env_file: Optional[str] = None
) -> Config:
    """Load and validate configuration

    Sources, lowest precedence first: model defaults, the YAML file (with
    ${VAR} substitution), then the environment variables in ENV_OVERRIDES.

    Args:
        config_path: Path to YAML configuration file. When omitted,
            ``config.yaml`` is read if it exists.
        env_file: Optional path to dotenv file

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If an explicit config or env file doesn't exist
        ValueError: If configuration is invalid
    """
    _load_env_file(env_file)

    raw_config: Any = {}
    if config_path is not None:
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
        with open(config_path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}
    elif os.path.exists(DEFAULT_CONFIG_PATH):
        with open(DEFAULT_CONFIG_PATH, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ValueError("Invalid configuration: top level must be a mapping")

    config_data = apply_env_overrides(substitute_env_vars(raw_config))

    try:
        return Config(**config_data)
    except Exception as e:
        raise ValueError(f"Invalid configuration: {e}")
