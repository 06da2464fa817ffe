"""
Logging configuration
"""

import json
import logging
import sys
from core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


class ErrorContextFormatter(logging.Formatter):
    """Appends the ``error_context`` extra (LoadEngineException.to_dict()) as JSON"""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        error_context = getattr(record, "error_context", None)
        if error_context:
            message += f" | error_context={json.dumps(error_context, default=str, sort_keys=True)}"
        return message


def setup_logging(level: str = None):
    """Configure application logging"""

    level_name = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ErrorContextFormatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logging.basicConfig(level=log_level, handlers=[handler])

    # Per-statement SQL and connection chatter stays out of batch logs
    for name in ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured at {level_name} level")
