from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

PCAP_MAGIC = 0xA1B2C3D4
PCAP_MAGIC_NANO = 0xA1B23C4D


@dataclass
class Rec:
    """One record for a hand-built pcap. `caplen` and `wirelen` override the header fields only."""

    sec: int
    frac: int = 0
    data: bytes = b""
    caplen: Optional[int] = None
    wirelen: Optional[int] = None


RecordSpec = Union[int, Rec]


@dataclass
class ParsedPcap:
    magic: int
    snaplen: int
    linktype: int
    records: List[Tuple[int, int, int, int, bytes]]

    @property
    def seconds(self) -> List[int]:
        return [r[0] for r in self.records]

    @property
    def payloads(self) -> List[bytes]:
        return [r[4] for r in self.records]


def _to_rec(name: str, index: int, spec: RecordSpec) -> Rec:
    if isinstance(spec, Rec):
        return spec
    return Rec(sec=spec, data=f"{name}-{index}-{spec}".encode("ascii"))


def write_pcap(
    path: Path,
    records: Sequence[RecordSpec],
    linktype: int = 1,
    snaplen: int = 65535,
    nano: bool = False,
    endian: str = "<",
) -> Path:
    """Plain ints become records at that second with a payload naming file, index and time."""
    name = path.stem
    with open(path, "wb") as fh:
        fh.write(
            struct.pack(
                endian + "IHHiIII",
                PCAP_MAGIC_NANO if nano else PCAP_MAGIC,
                2,
                4,
                0,
                0,
                snaplen,
                linktype,
            )
        )
        for index, spec in enumerate(records):
            rec = _to_rec(name, index, spec)
            caplen = len(rec.data) if rec.caplen is None else rec.caplen
            wirelen = caplen if rec.wirelen is None else rec.wirelen
            fh.write(struct.pack(endian + "IIII", rec.sec, rec.frac, caplen, wirelen))
            fh.write(rec.data)
    return path


def parse_pcap_bytes(raw: bytes) -> ParsedPcap:
    magic_le = struct.unpack("<I", raw[:4])[0]
    endian = "<" if magic_le in (PCAP_MAGIC, PCAP_MAGIC_NANO) else ">"
    magic, _vmaj, _vmin, _tz, _sig, snaplen, linktype = struct.unpack(endian + "IHHiIII", raw[:24])
    records = []
    offset = 24
    while offset + 16 <= len(raw):
        sec, frac, caplen, wirelen = struct.unpack(endian + "IIII", raw[offset : offset + 16])
        offset += 16
        data = raw[offset : offset + caplen]
        offset += caplen
        records.append((sec, frac, caplen, wirelen, data))
    return ParsedPcap(magic=magic, snaplen=snaplen, linktype=linktype, records=records)
