"""
Logging configuration with request correlation ids.

Every log record is stamped with the correlation id of the HTTP request that
produced it, so a single authorization flow can be followed across the
engine, the stores and the endpoints.
"""

import contextvars
import json
import logging
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# Correlation ID context for logs
_cid_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - cid=%(cid)s - %(message)s"
LOG_FILE_NAME = "faceauth_server.log"


def set_correlation_id(cid: str) -> contextvars.Token:
    """Bind a correlation id to the current context."""
    return _cid_ctx.set(cid)


def reset_correlation_id(token: contextvars.Token) -> None:
    _cid_ctx.reset(token)


def get_correlation_id() -> str:
    return _cid_ctx.get()


class CidLogFilter(logging.Filter):
    """Inject correlation id from context into log records as record.cid."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.cid = _cid_ctx.get()
        return True


class JSONLogFormatter(logging.Formatter):
    """Simple structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "cid": getattr(record, "cid", "-"),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class LocalTimeFormatter(logging.Formatter):
    def formatTime(self, record, datefmt=None):
        ct = self.converter(record.created)
        if datefmt:
            return time.strftime(datefmt, ct)
        t = time.strftime("%Y-%m-%d %H:%M:%S", ct)
        return f"{t},{record.msecs:03.0f}"


def _make_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return JSONLogFormatter()
    return LocalTimeFormatter(TEXT_FORMAT)


def configure_logging(level: str = "INFO", log_format: str = "text", log_dir: Optional[str] = None) -> None:
    """
    Configure the root logger.

    Safe to call more than once: handlers installed by a previous call are
    replaced rather than duplicated.

    Args:
        level: Root log level name
        log_format: "text" or "json"
        log_dir: Directory for a rotating log file; no file logging when None
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root_logger.handlers):
        if getattr(handler, "_faceauth", False):
            root_logger.removeHandler(handler)
            handler.close()

    formatter = _make_formatter(log_format)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.addFilter(CidLogFilter())
    console._faceauth = True
    root_logger.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path / LOG_FILE_NAME, maxBytes=20 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CidLogFilter())
        file_handler._faceauth = True
        root_logger.addHandler(file_handler)

    # uvicorn access lines already carry the request path
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
