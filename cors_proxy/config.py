"""Proxy configuration value and the loaders that build it."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from cors_proxy.errors import ConfigurationError
from cors_proxy.utils import url_authority, url_origin
from cors_proxy.vars import DEFAULT_PORT, DEFAULT_TIMEOUT_MS

logger = logging.getLogger("uvicorn.error")

MAX_TIMEOUT_MS = 2**32 - 1

# Keys used in proxy.config.json mapped to ProxyConfig fields
FILE_KEYS = {
    "port": "listen_port",
    "target": "target",
    "logger": "logging_enabled",
    "timeout": "request_timeout_ms",
    "host": "host",
}

CONFIG_TEMPLATE = {
    "port": DEFAULT_PORT,
    "target": "http://example.com",
    "logger": True,
    "timeout": DEFAULT_TIMEOUT_MS,
}


class ProxyConfig(BaseModel):
    """Immutable settings shared by every request handler."""

    model_config = ConfigDict(frozen=True)

    listen_port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    target: str
    logging_enabled: bool = True
    request_timeout_ms: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0, le=MAX_TIMEOUT_MS)
    host: str = "0.0.0.0"

    @field_validator("target")
    @classmethod
    def _absolute_http_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("target URL is required")
        try:
            parts = urlsplit(value)
            parts.port  # raises ValueError on a malformed port
        except ValueError as e:
            raise ValueError(f"invalid target URL {value!r}: {e}") from e
        if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
            raise ValueError(
                f"target must be an absolute http(s) URL such as http://example.com, got {value!r}"
            )
        return value

    @property
    def target_scheme(self) -> str:
        return urlsplit(self.target).scheme.lower()

    @property
    def target_authority(self) -> str:
        return url_authority(urlsplit(self.target))

    @property
    def target_origin(self) -> str:
        return url_origin(urlsplit(self.target))

    @property
    def local_origin(self) -> str:
        return f"http://localhost:{self.listen_port}"

    @property
    def timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error.get("loc", ())) or "config"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def build_config(**values: Any) -> ProxyConfig:
    """Create a validated ProxyConfig, raising ConfigurationError on bad input."""
    try:
        return ProxyConfig(**values)
    except ValidationError as exc:
        raise ConfigurationError(_describe_validation_error(exc)) from exc


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Read a JSON config file and return its values keyed by ProxyConfig field.

    A missing file yields an empty dict. Unknown keys are logged and skipped.
    """
    config_path = Path(path)
    if not config_path.exists():
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load config file {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file {config_path} must contain a JSON object, got {type(data).__name__}"
        )

    values: Dict[str, Any] = {}
    for key, value in data.items():
        field_name = FILE_KEYS.get(key)
        if field_name is None:
            logger.warning(f"[Config] Ignoring unknown key {key!r} in {config_path}")
            continue
        if value is None:
            continue
        values[field_name] = value
    return values


def resolve_config(
    cli_values: Optional[Dict[str, Any]] = None,
    file_values: Optional[Dict[str, Any]] = None,
    env_values: Optional[Dict[str, Any]] = None,
) -> ProxyConfig:
    """Merge config sources: CLI flags > config file > environment > defaults."""
    merged: Dict[str, Any] = {}
    for source in (env_values, file_values, cli_values):
        if not source:
            continue
        merged.update({k: v for k, v in source.items() if v is not None})
    if not merged.get("target"):
        raise ConfigurationError("target: the --target option is required")
    return build_config(**merged)


def write_config_template(path: str) -> Path:
    config_path = Path(path)
    if config_path.exists():
        raise FileExistsError(f"{config_path} already exists")
    config_path.write_text(json.dumps(CONFIG_TEMPLATE, indent=2) + "\n", encoding="utf-8")
    return config_path
