"""Logging setup and the named loggers used across the service"""
import logging

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
QUIET_LOGGERS = {
    "urllib3": logging.WARNING,
    "urllib3.connectionpool": logging.WARNING,
    "httpx": logging.WARNING,
    "googleapiclient.discovery_cache": logging.ERROR,
}


def setup_logging(level: str = "INFO"):
    """Configure the root logger from LOG_LEVEL"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )
    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


# Paystack webhook deliveries
webhook_logger = logging.getLogger("webhook")
# Expiry sweep runs, scheduled or operator-triggered
sweep_logger = logging.getLogger("sweep")
# Signature and operator-auth rejections
security_logger = logging.getLogger("security")
