"""Bindings for the application's ``config.php`` template."""
from __future__ import annotations

import socket
from datetime import datetime

from .effective import EffectiveConfig

DEFAULT_API_KEY = "demo"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

#: Every placeholder the runtime configuration template may reference.
PLACEHOLDERS: tuple[str, ...] = (
    "ALPHA_VANTAGE_API_KEY",
    "APP_NAME",
    "DEBUG_MODE",
    "DEFAULT_TIMEZONE",
    "LOG_ENABLED",
    "LOG_FILE",
    "SESSION_LIFETIME",
    "CSRF_PROTECTION",
    "DEFAULT_HOURLY_RATE",
    "CURRENCY_SYMBOL",
    "DATE_FORMAT",
    "TIME_FORMAT",
    "STOCK_ANALYSIS_ENABLED",
    "DEFAULT_PE_RATIO",
    "STOCK_CACHE_DURATION",
    "PDF_EXPORT_ENABLED",
    "CSV_EXPORT_ENABLED",
    "EXPORT_RETENTION_DAYS",
    "CACHE_ENABLED",
    "CACHE_DIR",
    "MAX_EXECUTION_TIME",
    "MEMORY_LIMIT",
    "EMAIL_ENABLED",
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USERNAME",
    "SMTP_PASSWORD",
    "FROM_EMAIL",
    "DEPLOYMENT_TIMESTAMP",
    "DEPLOYMENT_ENV",
    "SERVER_NAME",
)

# Values the operator may not override through configuration keys.
_FIXED = frozenset({"ALPHA_VANTAGE_API_KEY", "DEPLOYMENT_TIMESTAMP", "SERVER_NAME"})


def build_bindings(
    effective: EffectiveConfig,
    *,
    api_key: str,
    now: datetime | None = None,
    hostname: str | None = None,
) -> dict[str, str]:
    """Return the placeholder bindings for *effective*.

    Any placeholder except the API key, the timestamp and the server name
    can be overridden by its lowercase name in the configuration, e.g.
    ``default_timezone``.
    """
    log_file = str(effective.log_file) if effective.log_file else f"{effective.log_dir}/app.log"
    bindings = {
        "ALPHA_VANTAGE_API_KEY": api_key.strip() or DEFAULT_API_KEY,
        "APP_NAME": effective.app_name,
        "DEBUG_MODE": "false",
        "DEFAULT_TIMEZONE": "UTC",
        "LOG_ENABLED": "true",
        "LOG_FILE": log_file,
        "SESSION_LIFETIME": "3600",
        "CSRF_PROTECTION": "true",
        "DEFAULT_HOURLY_RATE": "100",
        "CURRENCY_SYMBOL": "$",
        "DATE_FORMAT": "Y-m-d",
        "TIME_FORMAT": "H:i",
        "STOCK_ANALYSIS_ENABLED": "true",
        "DEFAULT_PE_RATIO": "20",
        "STOCK_CACHE_DURATION": "300",
        "PDF_EXPORT_ENABLED": "true",
        "CSV_EXPORT_ENABLED": "true",
        "EXPORT_RETENTION_DAYS": "30",
        "CACHE_ENABLED": "true",
        "CACHE_DIR": str(effective.app_path / "cache"),
        "MAX_EXECUTION_TIME": effective.max_execution_time,
        "MEMORY_LIMIT": effective.memory_limit,
        "EMAIL_ENABLED": "false",
        "SMTP_HOST": "localhost",
        "SMTP_PORT": "587",
        "SMTP_USERNAME": "",
        "SMTP_PASSWORD": "",
        "FROM_EMAIL": f"noreply@{effective.domain}",
        "DEPLOYMENT_TIMESTAMP": (now or datetime.now()).strftime(TIMESTAMP_FORMAT),
        "DEPLOYMENT_ENV": "production",
        "SERVER_NAME": hostname if hostname is not None else socket.gethostname(),
    }
    for name in PLACEHOLDERS:
        if name in _FIXED:
            continue
        override = effective.raw.get(name.lower())
        if override is not None:
            bindings[name] = override
    return bindings


__all__ = ["DEFAULT_API_KEY", "PLACEHOLDERS", "TIMESTAMP_FORMAT", "build_bindings"]
