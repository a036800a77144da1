"""Logging setup. One stderr sink; task correlation tags come from logger.contextualize."""

import sys

from loguru import logger


FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} "
    "- {message} | {extra}"
)


def setup_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format=FORMAT)
