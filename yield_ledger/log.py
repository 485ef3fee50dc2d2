import sys
from typing import Optional

from loguru import logger


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure loguru sinks for the ledger service."""
    logger.remove()
    logger.add(sys.stderr, level=level)
    if log_file:
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level=level,
            encoding="utf-8",
        )
