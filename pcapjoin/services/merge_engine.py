from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol, Tuple

LOGGER = logging.getLogger(__name__)


class RecordDecodeError(ValueError):
    """A single capture record could not be decoded; the source itself stays usable."""


class PacketSource(Protocol):
    @property
    def name(self) -> str: ...

    def read_record(self) -> Optional["Packet"]: ...

    def close(self) -> None: ...


class PacketSink(Protocol):
    def write_packet(self, packet: "Packet") -> None: ...


@dataclass
class Packet:
    timestamp_ns: int
    data: bytes
    wirelen: int
    # Which source produced this packet. Not an owner: sources are closed by the engine/admission.
    source: PacketSource = field(repr=False, compare=False)

    @property
    def caplen(self) -> int:
        return len(self.data)


@dataclass
class MergeStats:
    written: int = 0
    skipped_errors: int = 0
    skipped_empty: int = 0
    sources_retired: int = 0
    heap_pushes: int = 0

    @property
    def skipped(self) -> int:
        return self.skipped_errors + self.skipped_empty


def read_next(source: PacketSource, stats: MergeStats) -> Optional[Packet]:
    """Return the next usable packet of `source`, or None once it is exhausted.

    Undecodable records and empty payloads are skipped without retiring the source.
    The caller owns retiring (closing) the source when None comes back.
    """
    while True:
        try:
            packet = source.read_record()
        except RecordDecodeError as exc:
            stats.skipped_errors += 1
            LOGGER.info("%s (skipping this packet)", exc, extra={"category": "MERGE"})
            continue
        if packet is None:
            LOGGER.info("%s: done", source.name, extra={"category": "FILES"})
            return None
        if not packet.data:
            stats.skipped_empty += 1
            LOGGER.info("%s: empty data (skipping this packet)", source.name, extra={"category": "MERGE"})
            continue
        return packet


class MergeEngine:
    """K-way merge of timestamp-sorted packet sources.

    The heap holds at most one pending packet per active source. After emitting the
    minimum, the same source is probed again: while its next packet is not later than
    the new heap minimum (the horizon) it is written straight away, so long runs from
    one source never touch the heap. With ``lookahead=False`` every packet goes
    through the heap; the output is identical either way.
    """

    def __init__(self, lookahead: bool = True, stats: Optional[MergeStats] = None) -> None:
        self.lookahead = lookahead
        self.stats = stats if stats is not None else MergeStats()
        self._heap: List[Tuple[int, int, Packet]] = []
        self._seq = 0

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, packet: Packet) -> None:
        # seq keeps ties ordered by arrival and stops heapq from comparing Packets.
        heapq.heappush(self._heap, (packet.timestamp_ns, self._seq, packet))
        self._seq += 1
        self.stats.heap_pushes += 1

    def extend(self, packets: Iterable[Packet]) -> None:
        for packet in packets:
            self.push(packet)

    def horizon(self) -> Optional[int]:
        """Earliest pending timestamp, None when nothing else is pending."""
        if not self._heap:
            return None
        return self._heap[0][0]

    def _retire(self, source: PacketSource) -> None:
        source.close()
        self.stats.sources_retired += 1

    def _write(self, sink: PacketSink, packet: Packet) -> None:
        sink.write_packet(packet)
        self.stats.written += 1

    def emit_next(self, sink: PacketSink) -> None:
        _ts, _seq, packet = heapq.heappop(self._heap)
        self._write(sink, packet)

        source = packet.source
        horizon = self.horizon()
        while True:
            nxt = read_next(source, self.stats)
            if nxt is None:
                self._retire(source)
                return
            if self.lookahead and (horizon is None or nxt.timestamp_ns <= horizon):
                self._write(sink, nxt)
                continue
            self.push(nxt)
            return

    def run(self, sink: PacketSink) -> MergeStats:
        while self._heap:
            self.emit_next(sink)
        LOGGER.debug(
            "Merge loop finished written=%s skipped_errors=%s skipped_empty=%s heap_pushes=%s",
            self.stats.written,
            self.stats.skipped_errors,
            self.stats.skipped_empty,
            self.stats.heap_pushes,
            extra={"category": "PERF"},
        )
        return self.stats

    def close(self) -> None:
        """Release sources still pending after an aborted run."""
        while self._heap:
            _ts, _seq, packet = heapq.heappop(self._heap)
            packet.source.close()
