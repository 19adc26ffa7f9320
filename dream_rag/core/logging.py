"""Key=value logging for ingestion and retrieval runs.

Call sites attach structured fields with ``extra={"extra_data": {...}}``;
the formatter appends them after the message. Raw dream or query text is
never logged, only :func:`query_fingerprint` of it.
"""

import hashlib
import logging
import sys

_BASE_FIELDS = ("timestamp", "level", "logger", "function", "message")


class StructuredFormatter(logging.Formatter):
    """Render a record as space separated key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        fields = dict(
            zip(
                _BASE_FIELDS,
                (
                    self.formatTime(record, self.datefmt),
                    record.levelname,
                    record.name,
                    record.funcName,
                    record.getMessage(),
                ),
            )
        )
        fields.update(getattr(record, "extra_data", None) or {})

        line = " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _level_for_env() -> int:
    try:
        from dream_rag.core.config import get_settings

        env = get_settings().DREAM_RAG_ENV
    except Exception:
        # Settings need credentials; log at INFO until they are present
        return logging.INFO
    return logging.DEBUG if env == "dev" else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger writing structured lines to stdout.

    Handlers are attached once per logger name, so repeated calls at import
    time are safe. Level is DEBUG in the dev environment and INFO elsewhere.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    logger.addHandler(handler)
    logger.setLevel(_level_for_env())
    return logger


def query_fingerprint(text: str) -> str:
    """Short stable hash of a text, safe to put in logs instead of the text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
