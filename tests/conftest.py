from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Iterator, Sequence, Union

import pytest

from pcapjoin.logging_setup import CONSOLE_HANDLER_NAME
from pcap_records import ParsedPcap, RecordSpec, parse_pcap_bytes, write_pcap


@pytest.fixture
def make_pcap(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str, records: Sequence[RecordSpec], **header) -> Path:
        return write_pcap(tmp_path / f"{name}.pcap", records, **header)

    return _make


@pytest.fixture
def read_pcap() -> Callable[[Union[Path, bytes]], ParsedPcap]:
    def _read(source: Union[Path, bytes]) -> ParsedPcap:
        if isinstance(source, bytes):
            return parse_pcap_bytes(source)
        return parse_pcap_bytes(source.read_bytes())

    return _read


@pytest.fixture(autouse=True)
def restore_root_logging() -> Iterator[None]:
    """Undo setup_logging() so each test starts from the interpreter's logging state."""
    root = logging.getLogger()
    scapy_logger = logging.getLogger("scapy")
    handlers_before = list(root.handlers)
    level = root.level
    scapy_level = scapy_logger.level
    installed = root.__dict__.get("_pcapjoin_logging_installed")
    yield
    # pytest swaps its own capture handlers between phases; only drop ours.
    for handler in list(root.handlers):
        if handler in handlers_before:
            continue
        if handler.get_name() == CONSOLE_HANDLER_NAME or isinstance(handler, RotatingFileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    scapy_logger.setLevel(scapy_level)
    if installed is None:
        root.__dict__.pop("_pcapjoin_logging_installed", None)
    else:
        root._pcapjoin_logging_installed = installed  # type: ignore[attr-defined]
