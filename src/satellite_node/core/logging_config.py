"""Process-wide logging setup."""
from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger once; later calls only adjust the level."""
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=numeric, format=LOG_FORMAT)
    root.setLevel(numeric)
    # httpx logs every request at INFO; keep hub traffic quiet unless debugging
    logging.getLogger("httpx").setLevel(max(numeric, logging.WARNING))
