from __future__ import annotations

import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional, Tuple

import click

from pcapjoin.config_loader import resolve_settings
from pcapjoin.logging_setup import setup_logging
from pcapjoin.merge import STDOUT_PATH, OutputOpenError, merge_captures

try:
    VERSION = version("pcapjoin")
except PackageNotFoundError:
    # Source checkout without an install; pyproject.toml holds the real version.
    VERSION = "0+unknown"
LOGGER = logging.getLogger(__name__)


@click.command(
    context_settings={"help_option_names": ["-h", "--help"]},
    help=f"pcapjoin v{VERSION}\n\nMerge timestamp-sorted pcap files into one timestamp-sorted pcap.",
)
@click.version_option(VERSION, "-V", "--version", prog_name="pcapjoin", message="%(prog)s v%(version)s")
@click.option("-v", "--verbose", is_flag=True, help="Explain when skipping packets or entire input files.")
@click.option(
    "-w",
    "output",
    default=STDOUT_PATH,
    show_default=True,
    help="Sets the output filename. If the name is '-', stdout will be used.",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="PCAPJOIN_CONFIG",
    default=None,
    help="Optional YAML file with merge settings.",
)
@click.argument("infiles", nargs=-1, required=True, type=click.Path(path_type=Path))
def main(verbose: bool, output: str, config_path: Optional[Path], infiles: Tuple[Path, ...]) -> None:
    setup_logging(verbose)
    LOGGER.info("pcapjoin v%s", VERSION, extra={"category": "CONFIG"})
    LOGGER.debug(
        "CLI merge command inputs=%s output=%s config=%s",
        [str(p) for p in infiles],
        output,
        config_path or "-",
        extra={"category": "CONFIG"},
    )
    try:
        settings = resolve_settings(config_path)
        merge_captures(list(infiles), output, settings)
    except (ValueError, OutputOpenError, OSError) as exc:
        LOGGER.error("Merge aborted error=%s", exc, extra={"category": "ERRORS"})
        sys.exit(f"pcapjoin: {exc}")


if __name__ == "__main__":
    main()
