from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

DEFAULT_OUTPUT_BUFFER_SIZE = 1024 * 1024

_SIZE_PATTERN = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[a-zA-Z]{0,3})\s*$")
_SIZE_UNITS = {
    "": 1,
    "b": 1,
    "kb": 1000,
    "mb": 1000**2,
    "gb": 1000**3,
    "kib": 1024,
    "mib": 1024**2,
    "gib": 1024**3,
}

_ENV_OVERRIDES = {
    "PCAPJOIN_LOOKAHEAD": "lookahead",
    "PCAPJOIN_OUTPUT_BUFFER_SIZE": "output_buffer_size",
    "PCAPJOIN_TIMESTAMP_PRECISION": "timestamp_precision",
}


def parse_size(raw: object) -> int:
    """
    Turn an integer or a human-readable size ("64KiB", "1 MB", "1.5MiB") into bytes.

    Raises ValueError for unknown units and non-positive sizes.
    """
    if isinstance(raw, bool):
        raise ValueError(f"Invalid size: {raw!r}")
    if isinstance(raw, int):
        value = raw
    else:
        match = _SIZE_PATTERN.match(str(raw))
        if not match:
            raise ValueError(f"Invalid size: {raw!r}")
        multiplier = _SIZE_UNITS.get(match.group("unit").lower())
        if multiplier is None:
            raise ValueError(f"Unknown size unit in {raw!r}")
        value = int(float(match.group("num")) * multiplier)
    if value <= 0:
        raise ValueError(f"Size must be positive: {raw!r}")
    return value


class MergeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lookahead: bool = True
    output_buffer_size: int = DEFAULT_OUTPUT_BUFFER_SIZE
    timestamp_precision: Literal["auto", "micro", "nano"] = "auto"

    @field_validator("output_buffer_size", mode="before")
    @classmethod
    def validate_output_buffer_size(cls, value: object) -> int:
        if value is None:
            return DEFAULT_OUTPUT_BUFFER_SIZE
        return parse_size(value)

    @field_validator("timestamp_precision", mode="before")
    @classmethod
    def normalize_timestamp_precision(cls, value: object) -> object:
        if value is None:
            return "auto"
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @model_validator(mode="before")
    @classmethod
    def unwrap_merge_section(cls, values: object) -> object:
        # Accept both a bare mapping and one nested under "merge:".
        if isinstance(values, dict) and set(values) == {"merge"}:
            return values["merge"] or {}
        return values


def load_config(config_path: Path) -> MergeSettings:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    try:
        settings = MergeSettings.model_validate(parsed)
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
    LOGGER.info("Config loaded settings=%s", settings.model_dump(), extra={"category": "CONFIG"})
    return settings


def _env_overrides() -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        raw = os.environ.get(env_name, "").strip()
        if raw:
            overrides[field_name] = raw
    return overrides


def resolve_settings(config_path: Optional[Path] = None) -> MergeSettings:
    """Defaults, then the YAML file (if any), then PCAPJOIN_* environment variables."""
    settings = load_config(config_path) if config_path is not None else MergeSettings()
    overrides = _env_overrides()
    if not overrides:
        return settings

    LOGGER.debug("Applying env overrides=%s", sorted(overrides), extra={"category": "CONFIG"})
    merged = settings.model_dump()
    merged.update(overrides)
    try:
        return MergeSettings.model_validate(merged)
    except ValidationError as exc:
        LOGGER.error("Env override validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid PCAPJOIN_* environment override: {exc}") from exc
