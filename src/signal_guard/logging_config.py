from __future__ import annotations

import sys
from typing import TextIO

from loguru import logger


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"


def configure_logging(level: str = "INFO", serialize: bool = False, sink: TextIO | None = None) -> None:
    logger.remove()
    logger.add(
        sink or sys.stdout,
        level=level.upper(),
        format=LOG_FORMAT,
        serialize=serialize,
        enqueue=True,
    )
