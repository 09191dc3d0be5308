"""
Configuration module for the laboratory API
"""

import os
from typing import List


def env_bool(key: str, default: bool = False) -> bool:
    """Get boolean value from environment variable"""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def env_int(key: str, default: int) -> int:
    """Get integer value from environment variable"""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def env_list(key: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(key, default).split(",") if item.strip()]


API_NAME = os.getenv("API_NAME", "Laboratory Resource Management API")
API_PREFIX = "/api"

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./labapi.db")

# Logging configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
SECURITY_LOG_FILE = os.getenv("SECURITY_LOG_FILE", "./logs/security.log")
SECURITY_LOG_MAX_BYTES = env_int("SECURITY_LOG_MAX_BYTES", 10 * 1024 * 1024)
SECURITY_LOG_BACKUP_COUNT = env_int("SECURITY_LOG_BACKUP_COUNT", 10)

# Request admission
MAX_PAYLOAD_BYTES = env_int("MAX_PAYLOAD_BYTES", 1024 * 1024)
TRUST_PROXY: bool = env_bool("TRUST_PROXY", False)
CORS_ORIGINS = env_list(
    "CORS_ORIGINS",
    "http://localhost,http://localhost:3000,http://localhost:5173,http://127.0.0.1:5500",
)

# Tokens
TOKEN_TTL_DAYS = env_int("TOKEN_TTL_DAYS", 30)
BCRYPT_ROUNDS = env_int("BCRYPT_ROUNDS", 12)
MIN_PASSWORD_LENGTH = 6

# API rate limiting; authenticated callers always get twice this
RATE_LIMIT_PER_WINDOW = env_int("RATE_LIMIT_PER_WINDOW", 60)
RATE_LIMIT_WINDOW_SECONDS = env_int("RATE_LIMIT_WINDOW_SECONDS", 60)

# Login lockout
LOGIN_MAX_ATTEMPTS = env_int("LOGIN_MAX_ATTEMPTS", 5)
LOGIN_WINDOW_SECONDS = env_int("LOGIN_WINDOW_SECONDS", 600)
LOGIN_BLOCK_SECONDS = env_int("LOGIN_BLOCK_SECONDS", 600)

# Alerting and reputation upkeep
ALERT_CLEANUP_INTERVAL_SECONDS = env_int("ALERT_CLEANUP_INTERVAL_SECONDS", 300)
REPUTATION_RETENTION_DAYS = env_int("REPUTATION_RETENTION_DAYS", 365)

# Optional first-run admin account
BOOTSTRAP_ADMIN_USERNAME = os.getenv("BOOTSTRAP_ADMIN_USERNAME")
BOOTSTRAP_ADMIN_PASSWORD = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
