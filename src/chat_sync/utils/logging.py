import sys

from loguru import logger

from chat_sync.config import get_settings

LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - {message}"


def configure_logging(level: str | None = None) -> None:
    """Replace loguru's default sink with a single stderr sink at 'level'."""
    logger.remove()
    logger.add(sys.stderr, level=(level or get_settings().log_level).upper(), format=LOG_FORMAT)
