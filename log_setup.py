"""Logging setup shared by the web app and the CLI.

configure() is called once at import time by app.py / studio_cli.py; every
other module just does logging.getLogger(__name__).

Every record carries the id of the studio-shot request being processed
(``-`` outside a request), so the interleaved lines of concurrent Flask
requests can be told apart in logs/studio.log:

    with log_setup.request_context(request_id):
        ...

Handlers:
  console          - LOG_LEVEL (default INFO), one line per record
  logs/studio.log  - DEBUG, rotating (5 × 5 MB)
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

LOGS_DIR = Path(__file__).parent / "logs"
LOG_FILE = LOGS_DIR / "studio.log"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  [%(request_id)s]  %(name)s: %(message)s"
_FILE_FMT = (
    "%(asctime)s  %(levelname)-7s  [%(request_id)s]  %(name)-14s  "
    "%(filename)s:%(lineno)d: %(message)s"
)
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

_NOISY = ("urllib3", "requests", "httpx", "httpcore", "werkzeug", "openai", "anthropic")

NO_REQUEST = "-"

# Flask runs each request on its own thread, which gets its own context
_current_request: contextvars.ContextVar[str] = contextvars.ContextVar("studio_request_id", default=NO_REQUEST)


class RequestIdFilter(logging.Filter):
    """Stamp ``record.request_id`` with the request bound to this context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = _current_request.get()
        return True


def current_request_id() -> str:
    return _current_request.get()


@contextmanager
def request_context(request_id: Optional[str]) -> Iterator[None]:
    """Bind ``request_id`` to every log record emitted inside the block."""
    token = _current_request.set(request_id or NO_REQUEST)
    try:
        yield
    finally:
        _current_request.reset(token)


def configure(level: Optional[str] = None) -> None:
    """Install console + rotating file handlers on the root logger.

    A second call is a no-op, so importing both app.py and studio_cli.py
    in one process is harmless.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    root.setLevel(logging.DEBUG)
    request_filter = RequestIdFilter()

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, level.upper(), logging.INFO))
    console.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    console.addFilter(request_filter)
    root.addHandler(console)

    rotating = logging.handlers.RotatingFileHandler(
        LOG_FILE,
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    rotating.setLevel(logging.DEBUG)
    rotating.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    rotating.addFilter(request_filter)
    root.addHandler(rotating)

    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
