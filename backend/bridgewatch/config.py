"""Configuration read from environment variables."""

import os
from pathlib import Path


def _env_secret(name: str, default: str = "") -> str:
    """Resolve a secret from the environment, falling back to a ``<NAME>_FILE`` path."""
    value = os.getenv(name)
    if value is not None and value.strip():
        return value.strip()

    file_path = (os.getenv(f"{name}_FILE") or "").strip()
    if file_path:
        try:
            secret = Path(file_path).read_text(encoding="utf-8").strip()
        except OSError:
            return default
        if secret:
            return secret

    return default


def _env_csv(name: str) -> list[str]:
    raw = os.getenv(name, "")
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS: list[str] = _env_csv("CORS_ORIGINS")

# TomTom traffic flow
TOMTOM_API_KEY: str = _env_secret("TOMTOM_API_KEY")
TOMTOM_FLOW_URL: str = os.getenv(
    "TOMTOM_FLOW_URL",
    "https://api.tomtom.com/traffic/services/4/flowSegmentData/relative/10/json",
)
TRAFFIC_TIMEOUT_SECONDS: float = float(os.getenv("TRAFFIC_TIMEOUT_SECONDS", "5"))
EASTBOUND_POINT: str = os.getenv("EASTBOUND_POINT", "52.0449,1.1700")
WESTBOUND_POINT: str = os.getenv("WESTBOUND_POINT", "52.0452,1.1735")

# Cache
CACHE_STALE_RATIO: float = float(os.getenv("CACHE_STALE_RATIO", "0.8"))
SNAPSHOT_TTL_SECONDS: float = float(os.getenv("SNAPSHOT_TTL_SECONDS", "600"))
SNAPSHOT_STALE_SECONDS: float = float(os.getenv("SNAPSHOT_STALE_SECONDS", "300"))

# Events feed
EVENTS_CACHE_TTL_SECONDS: float = float(os.getenv("EVENTS_CACHE_TTL_SECONDS", "600"))
EVENTS_LIMIT: int = int(os.getenv("EVENTS_LIMIT", "5"))
EVENTS_LOOKBACK_HOURS: int = int(os.getenv("EVENTS_LOOKBACK_HOURS", "24"))

# History store; an empty path disables persistence
HISTORY_PATH: str = os.getenv("HISTORY_PATH", "/data/bridge_history.jsonl")
HISTORY_MAX_BYTES: int = int(os.getenv("HISTORY_MAX_BYTES", str(5 * 1024 * 1024)))

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
