import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "cors-proxy")
VERSION = "1.0.0"

DEFAULT_PORT = 8000
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_CONFIG_FILE = "proxy.config.json"

PORT = os.environ.get("PORT", "")
TARGET_URL = os.environ.get("TARGET_URL", "")
PROXY_HOST = os.environ.get("PROXY_HOST", "0.0.0.0")
PROXY_LOGGER = os.environ.get("PROXY_LOGGER", "")
PROXY_TIMEOUT_MS = os.environ.get("PROXY_TIMEOUT_MS", "")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


def _parse_flag(raw: str):
    if not raw:
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


def env_defaults() -> dict:
    """Config values taken from the environment; unset variables are omitted."""
    values: dict = {}
    if PORT:
        values["listen_port"] = PORT
    if TARGET_URL:
        values["target"] = TARGET_URL
    if PROXY_HOST:
        values["host"] = PROXY_HOST
    logger_flag = _parse_flag(PROXY_LOGGER)
    if logger_flag is not None:
        values["logging_enabled"] = logger_flag
    if PROXY_TIMEOUT_MS:
        values["request_timeout_ms"] = PROXY_TIMEOUT_MS
    return values
