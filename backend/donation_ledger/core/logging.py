"""Logging configuration for the application"""
import json
import logging

from donation_ledger.core.config import settings

def setup_logging():
    """Configure logging for the application"""
    LOG_LEVEL = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def log_debug_extract(label: str, payload: dict):
    """Dump a structured extract of an event when STRIPE_WEBHOOK_DEBUG is on"""
    if not settings.STRIPE_WEBHOOK_DEBUG:
        return
    webhook_logger.info(f"[debug] {label} {json.dumps(payload, default=str, sort_keys=True)}")


# Export commonly used loggers
webhook_logger = logging.getLogger("webhook")
