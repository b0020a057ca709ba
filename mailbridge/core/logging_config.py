"""Process-wide logging setup."""
import logging
from typing import Optional

from mailbridge.core.config import Settings


def configure_logging(settings: Optional[Settings] = None):
    """Configure the root logger from settings (level and format)."""
    level_name = settings.log_level if settings else "INFO"
    log_format = settings.log_format if settings else "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=log_format)

    # googleapiclient logs every discovery/cache miss at INFO
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("imapclient").setLevel(max(level, logging.WARNING))
