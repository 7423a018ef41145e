"""
Process-wide logging setup shared by the API and the standalone scheduler.

Production writes one JSON object per line to stdout; other environments
get a readable pipe-separated format.
"""

import json
import logging
import sys
from typing import Optional

from .config import Settings

HUMAN_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(settings: Settings, level: Optional[str] = None) -> None:
    """
    Install root handlers for the current environment.

    Args:
        settings: Decides between JSON and human output
        level: Level name such as "DEBUG"; unknown names fall back to INFO
    """
    resolved = getattr(logging, (level or "INFO").upper(), logging.INFO)

    if settings.environment == "production":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter(datefmt="%Y-%m-%dT%H:%M:%S"))
        logging.root.handlers = [handler]
        logging.root.setLevel(resolved)
    else:
        logging.basicConfig(level=resolved, format=HUMAN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    # SQL echo is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
