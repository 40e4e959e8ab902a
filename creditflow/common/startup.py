"""Startup-time config logging and sanity warnings."""

from creditflow.common.config import CommonSettings
from creditflow.common.logging import logger

_SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def _redacted(name: str, value) -> str:
    if value is None or value == "":
        return "<unset>"
    if any(marker in name for marker in _SECRET_MARKERS):
        return "<redacted>"
    return str(value)


def log_startup_config(config: CommonSettings, keys: list[str]) -> None:
    """Log selected settings (secrets redacted) and flag unsafe webhook configuration."""

    snapshot = {"service": config.service_name}
    for key in keys:
        snapshot[key] = _redacted(key, getattr(config, key, None))
    logger.info("startup_config=%s", snapshot)

    for name in ("payment_webhook_secret", "generation_webhook_secret"):
        if getattr(config, name):
            continue
        if config.is_production:
            logger.error("startup_webhook_secret_missing setting=%s webhooks_will_be_rejected=true", name)
        else:
            logger.warning("startup_webhook_secret_missing setting=%s signatures_not_verified=true", name)
