from __future__ import annotations

import gzip
import io
import logging
import struct
from pathlib import Path
from typing import BinaryIO, Optional

from scapy.error import Scapy_Exception
from scapy.utils import RawPcapNgReader, RawPcapReader

from pcapjoin.services.merge_engine import Packet, RecordDecodeError

LOGGER = logging.getLogger(__name__)

NANOS_PER_SECOND = 1_000_000_000
RECORD_HEADER_LEN = 16
GZIP_MAGIC = b"\x1f\x8b"


class CaptureHeaderError(ValueError):
    """The file opened but is not a pcap container we can merge."""


def _open_capture_file(path: Path) -> BinaryIO:
    with open(path, "rb") as head_fh:
        compressed = head_fh.read(len(GZIP_MAGIC)) == GZIP_MAGIC
    if compressed:
        return gzip.open(path, "rb")  # type: ignore[return-value]
    return open(path, "rb")


class PcapSource:
    """One input capture plus its decode cursor.

    Wraps scapy's RawPcapReader so payloads and record headers are passed through
    untouched (no dissection). The underlying file is released exactly once, on
    close() or when leaving the context manager.
    """

    def __init__(self, path: Path, reader: RawPcapReader, size_bytes: int) -> None:
        self.path = path
        self.size_bytes = size_bytes
        self.snaplen: int = int(reader.snaplen)
        self.link_type: int = int(reader.linktype)
        self.nanosecond: bool = bool(getattr(reader, "nano", False))
        self._reader: Optional[RawPcapReader] = reader

    @classmethod
    def open(cls, path: Path) -> "PcapSource":
        """Open `path` and decode its global header.

        Raises OSError when the file cannot be opened and CaptureHeaderError when it
        is not a classic pcap container.
        """
        size_bytes = path.stat().st_size
        # Own the handle: scapy does not close a file whose header it rejects.
        fh = _open_capture_file(path)
        try:
            reader = RawPcapReader(fh)
        except (Scapy_Exception, EOFError, struct.error, gzip.BadGzipFile) as exc:
            fh.close()
            raise CaptureHeaderError(f"{path}: {exc}") from exc
        if isinstance(reader, RawPcapNgReader):
            reader.close()
            raise CaptureHeaderError(f"{path}: pcapng containers are not supported")
        source = cls(path, reader, size_bytes)
        LOGGER.debug(
            "Opened input path=%s snaplen=%s linktype=%s nano=%s size_bytes=%s",
            path,
            source.snaplen,
            source.link_type,
            source.nanosecond,
            size_bytes,
            extra={"category": "FILES"},
        )
        return source

    @property
    def name(self) -> str:
        return str(self.path)

    @property
    def closed(self) -> bool:
        return self._reader is None

    def read_record(self) -> Optional[Packet]:
        """Decode the next record; None at end of input.

        Raises RecordDecodeError for a record that is truncated, larger than the
        snaplen or than its original length. Its bytes are consumed either way;
        oversized payloads are skipped without being read into memory.
        """
        if self._reader is None:
            return None
        # scapy's per-record reader caps payloads, so only the header parsing is reused.
        fh = self._reader.f
        hdr = fh.read(RECORD_HEADER_LEN)
        if len(hdr) < RECORD_HEADER_LEN:
            return None
        sec, frac, caplen, wirelen = struct.unpack(self._reader.endian + "IIII", hdr)

        if self.snaplen and caplen > self.snaplen:
            fh.seek(caplen, io.SEEK_CUR)
            raise RecordDecodeError(f"{self.name}: capture length exceeds snap length: {caplen} > {self.snaplen}")
        if caplen > wirelen:
            fh.seek(caplen, io.SEEK_CUR)
            raise RecordDecodeError(
                f"{self.name}: capture length exceeds original packet length: {caplen} > {wirelen}"
            )

        data = fh.read(caplen)
        if len(data) < caplen:
            raise RecordDecodeError(f"{self.name}: truncated record ({len(data)} of {caplen} bytes)")

        frac_ns = frac if self.nanosecond else frac * 1000
        return Packet(
            timestamp_ns=sec * NANOS_PER_SECOND + frac_ns,
            data=data,
            wirelen=wirelen,
            source=self,
        )

    def close(self) -> None:
        if self._reader is None:
            return
        reader, self._reader = self._reader, None
        reader.close()
        LOGGER.debug("Closed input path=%s", self.path, extra={"category": "FILES"})

    def __enter__(self) -> "PcapSource":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
