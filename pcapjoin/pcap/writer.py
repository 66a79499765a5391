from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Optional

from pcapjoin.services.merge_engine import Packet

LOGGER = logging.getLogger(__name__)

PCAP_MAGIC = 0xA1B2C3D4
PCAP_MAGIC_NANO = 0xA1B23C4D
PCAP_VERSION_MAJOR = 2
PCAP_VERSION_MINOR = 4

_GLOBAL_HEADER = struct.Struct("<IHHIIII")
_RECORD_HEADER = struct.Struct("<IIII")


@dataclass
class CaptureProperties:
    snaplen: int = 0
    link_type: Optional[int] = None
    nanosecond: bool = False


@dataclass
class PcapSinkWriter:
    """Writes one classic little-endian pcap stream.

    The global header must be written exactly once, before the first record.
    """

    fh: BinaryIO
    name: str
    owns_handle: bool = True

    _nanosecond: Optional[bool] = None
    _records: int = 0
    _bytes_written: int = 0

    @property
    def header_written(self) -> bool:
        return self._nanosecond is not None

    @property
    def records_written(self) -> int:
        return self._records

    def write_header(self, properties: CaptureProperties) -> None:
        if self.header_written:
            raise RuntimeError(f"{self.name}: pcap header already written")
        hdr = _GLOBAL_HEADER.pack(
            PCAP_MAGIC_NANO if properties.nanosecond else PCAP_MAGIC,
            PCAP_VERSION_MAJOR,
            PCAP_VERSION_MINOR,
            0,
            0,
            int(properties.snaplen),
            int(properties.link_type or 0),
        )
        self.fh.write(hdr)
        self._bytes_written += len(hdr)
        self._nanosecond = properties.nanosecond
        LOGGER.debug(
            "Wrote pcap header output=%s snaplen=%s linktype=%s nano=%s",
            self.name,
            properties.snaplen,
            properties.link_type,
            properties.nanosecond,
            extra={"category": "FILES"},
        )

    def write_packet(self, packet: Packet) -> None:
        if self._nanosecond is None:
            raise RuntimeError(f"{self.name}: pcap header must be written before packets")

        # divmod floors, so pre-epoch timestamps still get a non-negative fraction.
        ts_sec, frac = divmod(packet.timestamp_ns, 1_000_000_000)
        if not self._nanosecond:
            frac //= 1000
        rec = _RECORD_HEADER.pack(ts_sec & 0xFFFFFFFF, frac, packet.caplen, packet.wirelen) + packet.data
        self.fh.write(rec)
        self._records += 1
        self._bytes_written += len(rec)

    def flush(self) -> None:
        self.fh.flush()

    def close(self) -> None:
        try:
            self.fh.flush()
        finally:
            if self.owns_handle:
                self.fh.close()
        LOGGER.debug(
            "Closed output=%s records=%s bytes=%s",
            self.name,
            self._records,
            self._bytes_written,
            extra={"category": "FILES"},
        )
