from __future__ import annotations

import logging
from typing import Optional

from thrag.config import SETTINGS

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured level and format to the root logger."""
    name = (level or SETTINGS.log_level).upper()
    logging.basicConfig(level=getattr(logging, name, logging.INFO), format=LOG_FORMAT)
