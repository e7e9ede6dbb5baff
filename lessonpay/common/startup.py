"""Startup-time helpers for safe config logging."""

import os

from lessonpay.common.config import settings
from lessonpay.common.logging import logger


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(secret in name for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN"]):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)
    if settings.verification_fallback == "permissive":
        logger.warning(
            "verification fallback is PERMISSIVE: payments are granted when the "
            "verification authority is unreachable (verification_url=%s)",
            settings.verification_url or "<unset>",
        )
