"""Logging configuration for the application"""
import logging

from ipnledger.core.config import settings


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
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


# Named loggers shared across the pipeline
ipn_logger = logging.getLogger("ipn")
delivery_logger = logging.getLogger("delivery")
