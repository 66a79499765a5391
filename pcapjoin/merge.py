from __future__ import annotations

import logging
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from pcapjoin.config_loader import MergeSettings
from pcapjoin.logging_setup import correlation_context
from pcapjoin.pcap.writer import CaptureProperties, PcapSinkWriter
from pcapjoin.services.admission import admit_inputs
from pcapjoin.services.merge_engine import MergeEngine, MergeStats

STDOUT_PATH = "-"
LOGGER = logging.getLogger(__name__)


class OutputOpenError(RuntimeError):
    """The output capture could not be created."""


def open_sink(output: str, buffer_size: int) -> PcapSinkWriter:
    if output == STDOUT_PATH:
        return PcapSinkWriter(fh=sys.stdout.buffer, name="<stdout>", owns_handle=False)
    try:
        fh = open(output, "wb", buffering=buffer_size)
    except OSError as exc:
        LOGGER.error("Cannot create output path=%s error=%s", output, exc, extra={"category": "ERRORS"})
        raise OutputOpenError(f"{output}: {exc}") from exc
    return PcapSinkWriter(fh=fh, name=output)


def output_properties(properties: CaptureProperties, precision: str) -> CaptureProperties:
    if precision == "auto":
        nanosecond = properties.nanosecond
    else:
        nanosecond = precision == "nano"
    return CaptureProperties(
        snaplen=properties.snaplen,
        link_type=properties.link_type,
        nanosecond=nanosecond,
    )


def merge_captures(
    inputs: Sequence[Path],
    output: str = STDOUT_PATH,
    settings: Optional[MergeSettings] = None,
) -> MergeStats:
    """Merge timestamp-sorted pcap files into one timestamp-sorted pcap at `output`.

    Notes:
    - Bad inputs and bad records are skipped; LinkTypeMismatchError and
      OutputOpenError abort the run, leaving whatever was already written.
    - Memory holds one pending packet per input, whatever the input sizes.
    """
    settings = settings or MergeSettings()
    with correlation_context():
        start_ts = time.perf_counter()
        LOGGER.info(
            "Merge start inputs=%s output=%s lookahead=%s",
            len(inputs),
            output,
            settings.lookahead,
            extra={"category": "MERGE"},
        )
        sink = open_sink(output, settings.output_buffer_size)
        stats = MergeStats()
        engine = MergeEngine(lookahead=settings.lookahead, stats=stats)
        admitted = None
        try:
            admitted = admit_inputs(inputs, stats)
            engine.extend(admitted.seeds)

            if not admitted.sources:
                LOGGER.warning("No readable input capture; writing an empty capture", extra={"category": "FILES"})
            LOGGER.info(
                "merging %d input files of size %f GiB",
                len(engine),
                admitted.total_input_bytes / 1024 / 1024 / 1024,
                extra={"category": "MERGE"},
            )
            LOGGER.info("writing to %s", sink.name, extra={"category": "FILES"})

            sink.write_header(output_properties(admitted.properties, settings.timestamp_precision))
            engine.run(sink)
        finally:
            engine.close()
            if admitted is not None:
                # close() is idempotent; this catches a source that was mid-lookahead on error.
                admitted.close()
            sink.close()

        elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
        LOGGER.info(
            "Merge completed output=%s written=%s skipped_errors=%s skipped_empty=%s duration_ms=%s",
            sink.name,
            stats.written,
            stats.skipped_errors,
            stats.skipped_empty,
            elapsed_ms,
            extra={"category": "MERGE"},
        )
        return stats
