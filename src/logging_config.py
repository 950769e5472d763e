"""
Logging setup for the review UI and the scripts.

setup_logging() runs once per process (Streamlit re-executes app.py on every
interaction, the module-level flag keeps handlers from piling up). Modules log
through logging.getLogger(__name__).

LOG_FORMAT=json writes one object per line with the import context fields
(sheet, tier, ...) lifted out of `extra=`; Hebrew text is kept as-is.
"""

import json
import logging
import sys

from config import LOG_FORMAT, LOG_LEVEL

# Attributes passed via extra={...} by the importer and resolver
CONTEXT_FIELDS = ("sheet", "tier", "product_number", "rows_dropped")

# Third-party loggers that are noisy at INFO (openpyxl warns about every
# unknown extension in exported workbooks)
QUIET_LOGGERS = ("openpyxl", "fsspec")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def build_formatter(fmt: str) -> logging.Formatter:
    if fmt == "json":
        return JSONFormatter()
    return logging.Formatter(TEXT_FORMAT, datefmt="%H:%M:%S")


_initialized = False


def setup_logging(level: str = None, fmt: str = None):
    """Attach a stdout handler to the root logger. Later calls are no-ops."""
    global _initialized
    if _initialized:
        return
    _initialized = True

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(build_formatter(fmt or LOG_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel((level or LOG_LEVEL).upper())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)
