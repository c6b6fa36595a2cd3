import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

DEFAULT_LOG_FILE = "/tmp/taskbridge.log"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_TEXT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(request_id)s] %(message)s"
_FILE_FORMAT = "[%(asctime)s] [%(levelname)s] [%(request_id)s] %(name)s %(message)s"

# Client request id of the sync run in progress; "-" outside a run.
current_request_id: ContextVar[str | None] = ContextVar(
    "taskbridge_request_id", default=None
)


@contextmanager
def request_context(request_id: str | None) -> Iterator[None]:
    """Tag every record logged inside the block with *request_id*."""
    token = current_request_id.set(request_id)
    try:
        yield
    finally:
        current_request_id.reset(token)


class RequestIdFilter(logging.Filter):
    """Copies the current request id onto each record as ``request_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = current_request_id.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, request, msg, exc."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        request_id = getattr(record, "request_id", "-")
        if request_id != "-":
            entry["request"] = request_id
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _attach(
    handler: logging.Handler, fmt: str, debug_format: str
) -> logging.Handler:
    if debug_format == "json":
        handler.setFormatter(JsonFormatter(datefmt=_DATEFMT))
    else:
        handler.setFormatter(logging.Formatter(fmt, datefmt=_DATEFMT))
    handler.addFilter(RequestIdFilter())
    return handler


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    level: str | None = None,
) -> None:
    """
    Configure logging for a bridge process.

    Args:
        mode: "service" logs to a file (scheduled / background runs),
              "cli" logs to stderr and optionally to *log_file* as well.
        debug: Force DEBUG regardless of any other level setting.
        log_file: Log file path; for "service" mode it overrides LOG_FILE.
        debug_format: "text" (default) or "json".
        level: Level from the ``logging`` config section, used when the
               LOG_LEVEL env var is unset.

    Environment variables:
        LOG_LEVEL: DEBUG, INFO, WARNING or ERROR.  Default is WARNING for
                   service mode and INFO for cli mode.
        LOG_FILE: Service-mode log file.  Default: /tmp/taskbridge.log
    """
    if debug:
        log_level = logging.DEBUG
    else:
        fallback = level or ("WARNING" if mode == "service" else "INFO")
        name = os.getenv("LOG_LEVEL", fallback).upper()
        log_level = getattr(logging, name, logging.INFO)

    handlers: list[logging.Handler] = []
    if mode == "service":
        path = log_file or os.getenv("LOG_FILE", DEFAULT_LOG_FILE)
        handlers.append(
            _attach(logging.FileHandler(path, mode="a"), _TEXT_FORMAT, debug_format)
        )
    else:
        handlers.append(
            _attach(logging.StreamHandler(sys.stderr), _TEXT_FORMAT, debug_format)
        )
        if log_file:
            handlers.append(
                _attach(
                    logging.FileHandler(log_file, mode="a"),
                    _FILE_FORMAT,
                    debug_format,
                )
            )

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # requests / urllib3 log every connection at DEBUG
    if log_level != logging.DEBUG:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
        logging.getLogger("requests").setLevel(logging.WARNING)
