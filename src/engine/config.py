# src/engine/config.py
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./secret_scans.db")

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
CACHE_ENABLED = _env_bool("CACHE_ENABLED", True)
CACHE_TTL = int(os.environ.get("CACHE_TTL", "3600"))
CACHE_KEY_PREFIX = os.environ.get("CACHE_KEY_PREFIX", "vuln-scanner:")

TRUFFLEHOG_IMAGE = os.environ.get("TRUFFLEHOG_IMAGE", "trufflesecurity/trufflehog:latest")
SCAN_TIMEOUT_SECONDS = int(os.environ.get("SCAN_TIMEOUT_SECONDS", "1800"))

# maintenance: stale in-flight sweep and retention
STALE_SCAN_SECONDS = int(os.environ.get("STALE_SCAN_SECONDS", "7200"))
RETENTION_DAYS = int(os.environ.get("RETENTION_DAYS", "30"))
MAINTENANCE_INTERVAL_SECONDS = int(os.environ.get("MAINTENANCE_INTERVAL_SECONDS", "300"))

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
