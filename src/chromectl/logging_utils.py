"""
Logging setup for chromectl.
"""
import logging

logger = logging.getLogger("chromectl")


def setup_logging(level: int = logging.INFO, debug: bool = False):
    """Configure logging for chromectl."""
    if debug:
        level = logging.DEBUG

    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
