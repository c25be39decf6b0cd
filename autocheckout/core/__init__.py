"""Core configuration and utilities package."""

from autocheckout.core.config import Settings, get_settings
from autocheckout.core.logging import get_logger, set_correlation_id, setup_logging
from autocheckout.core.security import (
    RateLimiter,
    check_rate_limit,
    verify_api_key,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Logging
    "get_logger",
    "set_correlation_id",
    "setup_logging",
    # Security
    "RateLimiter",
    "check_rate_limit",
    "verify_api_key",
]
