# config.py
"""
Runtime configuration for LinkScan.

Every value can be overridden with an environment variable in deployment;
the defaults below are tuned for a single small API process.
"""

import os


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default):
    value = os.getenv(name)
    if not value:
        return tuple(default)
    return tuple(v.strip().lower() for v in value.split(",") if v.strip())


# Storage
DB_FILE = os.getenv("LINKSCAN_DB", "linkscan.db")
DATABASE_URL = os.getenv("LINKSCAN_DATABASE_URL", f"sqlite:///{DB_FILE}")

# Worker pool: WORKERS run pipelines, MAX_PENDING more may wait for a worker
WORKERS = _env_int("LINKSCAN_WORKERS", 4)
MAX_PENDING = _env_int("LINKSCAN_MAX_PENDING", 100)
JOB_RETENTION_SECONDS = _env_int("LINKSCAN_JOB_RETENTION_SECONDS", 3600)

# Host intel probes (seconds)
CONNECT_TIMEOUT = _env_float("LINKSCAN_CONNECT_TIMEOUT", 3.0)
READ_TIMEOUT = _env_float("LINKSCAN_READ_TIMEOUT", 3.0)
WHOIS_ENABLED = _env_bool("LINKSCAN_WHOIS_ENABLED", False)

# Scoring policy
MALICIOUS_THRESHOLD = _env_int("LINKSCAN_MALICIOUS_THRESHOLD", 40)
SUSPICIOUS_THRESHOLD = _env_int("LINKSCAN_SUSPICIOUS_THRESHOLD", 20)
RISKY_TLDS = _env_list("LINKSCAN_RISKY_TLDS", (
    "tk", "ml", "ga", "cf", "gq",
    "top", "xyz", "work", "click", "country",
    "zip", "review", "loan", "kim", "men", "party",
))

# API
API_KEY = os.getenv("LINKSCAN_API_KEY", None)
REDIS_URL = os.getenv("REDIS_URL")
PORT = _env_int("PORT", 5050)
LOG_LEVEL = os.getenv("LINKSCAN_LOG_LEVEL", "INFO").upper()
