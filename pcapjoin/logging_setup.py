from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import sys
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_CATEGORY = "CONFIG"
CATEGORIES = {
    "CONFIG",
    "FILES",
    "MERGE",
    "PERF",
    "ERRORS",
}
CONSOLE_HANDLER_NAME = "pcapjoin.console"

_correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


def short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def get_correlation_id() -> str:
    return _correlation_id_var.get()


@contextlib.contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    cid = correlation_id or short_uuid()
    token = _correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        _correlation_id_var.reset(token)


class StderrHandler(logging.StreamHandler):
    """Console handler that always writes to the current sys.stderr."""

    @property
    def stream(self):  # type: ignore[override]
        return sys.stderr

    @stream.setter
    def stream(self, value: object) -> None:
        pass


class ContextEnricherFilter(logging.Filter):
    """
    Ensures every LogRecord has:
      - category (falls back to CONFIG, unknown values are kept as-is)
      - correlation_id of the merge run in progress
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        if not getattr(record, "category", None):
            record.category = DEFAULT_CATEGORY
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


def _resolve_level(verbose: bool) -> int:
    default_name = "INFO" if verbose else "WARNING"
    level_name = os.environ.get("PCAPJOIN_LOG_LEVEL", "").strip().upper() or default_name
    return getattr(logging, level_name, logging.INFO if verbose else logging.WARNING)


def setup_logging(verbose: bool = False) -> None:
    """
    Central logging setup.

    Diagnostics always go to stderr since stdout may carry the merged capture.

    Format (mandatory):
      %(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s |
      %(filename)s:%(lineno)d %(funcName)s() | %(message)s
    """
    fmt = (
        "%(asctime)s | %(levelname)s | %(category)s | cid=%(correlation_id)s | %(name)s | "
        "%(filename)s:%(lineno)d %(funcName)s() | %(message)s"
    )
    # Important: do NOT pass datefmt; default includes ",%03d" milliseconds.
    formatter = logging.Formatter(fmt=fmt)
    level = _resolve_level(verbose)

    root_logger = logging.getLogger()

    # Avoid double-installation; still allow runtime level update.
    if getattr(root_logger, "_pcapjoin_logging_installed", False):
        root_logger.setLevel(level)
        for h in root_logger.handlers:
            if h.get_name() == CONSOLE_HANDLER_NAME:
                h.setLevel(level)
        logging.getLogger("scapy").setLevel(logging.ERROR)
        return
    root_logger.setLevel(level)

    enricher = ContextEnricherFilter()

    console_handler = StderrHandler()
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(enricher)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    log_file = os.environ.get("PCAPJOIN_LOG_FILE", "").strip()
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=10 * 1024 * 1024,
            backupCount=10,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(enricher)
        root_logger.addHandler(file_handler)

    # scapy warns on every odd record it meets; our own skip diagnostics cover that.
    logging.getLogger("scapy").setLevel(logging.ERROR)
    root_logger._pcapjoin_logging_installed = True  # type: ignore[attr-defined]
