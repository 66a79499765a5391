from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

from pcapjoin.pcap.reader import CaptureHeaderError, PcapSource
from pcapjoin.pcap.writer import CaptureProperties
from pcapjoin.services.merge_engine import MergeStats, Packet, read_next

LOGGER = logging.getLogger(__name__)


class LinkTypeMismatchError(ValueError):
    """Two admitted inputs use different link-layer types; they cannot share one output."""


@dataclass
class AdmissionResult:
    properties: CaptureProperties = field(default_factory=CaptureProperties)
    sources: List[PcapSource] = field(default_factory=list)
    seeds: List[Packet] = field(default_factory=list)
    skipped_paths: List[Path] = field(default_factory=list)
    total_input_bytes: int = 0

    def close(self) -> None:
        for source in self.sources:
            source.close()


def reconcile_properties(properties: CaptureProperties, source: PcapSource) -> None:
    """Fold one input's static header fields into the running global properties."""
    properties.snaplen = max(properties.snaplen, source.snaplen)
    properties.nanosecond = properties.nanosecond or source.nanosecond
    if properties.link_type is None:
        properties.link_type = source.link_type
    elif properties.link_type != source.link_type:
        raise LinkTypeMismatchError(
            f"{source.name}: Different LinkTypes: {properties.link_type} {source.link_type}"
        )


def admit_inputs(paths: Sequence[Path], stats: MergeStats) -> AdmissionResult:
    """Open every input, reconcile snaplen/link type and read one seed packet per input.

    Unreadable inputs are skipped. A link type conflict closes everything opened so
    far and raises LinkTypeMismatchError.
    """
    result = AdmissionResult()
    try:
        for path in paths:
            try:
                source = PcapSource.open(path)
            except (OSError, CaptureHeaderError) as exc:
                LOGGER.info("%s: %s (skipping this file)", path, exc, extra={"category": "FILES"})
                result.skipped_paths.append(path)
                continue

            result.sources.append(source)
            result.total_input_bytes += source.size_bytes
            reconcile_properties(result.properties, source)

            seed = read_next(source, stats)
            if seed is None:
                source.close()
                stats.sources_retired += 1
                continue
            result.seeds.append(seed)
    except BaseException:
        result.close()
        raise

    LOGGER.info(
        "Admitted inputs=%s with_packets=%s skipped=%s snaplen=%s linktype=%s",
        len(result.sources),
        len(result.seeds),
        len(result.skipped_paths),
        result.properties.snaplen,
        result.properties.link_type,
        extra={"category": "FILES"},
    )
    return result
