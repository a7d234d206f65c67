"""
Engine configuration.

Loaded from a YAML file or a plain mapping and passed explicitly to the
integration helpers; nothing here is global.

Example::

    display_places: 20
    l2_depth: 10
    impact_quantity_lots: 100
    quote_decimals: 6
    log_level: INFO
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Union

import yaml
from loguru import logger

from ..core.fixednum import DISPLAY_PLACES


_LOG_LEVELS = frozenset({"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"})


def _require_int(value: Any, *, name: str, minimum: int) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise TypeError(f"{name} must be an int")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}")
    return int(value)


@dataclass(frozen=True)
class EngineConfig:
    display_places: int = DISPLAY_PLACES
    l2_depth: int = 10
    impact_quantity_lots: int = 1
    quote_decimals: int = 6
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        _require_int(self.display_places, name="display_places", minimum=0)
        _require_int(self.l2_depth, name="l2_depth", minimum=0)
        _require_int(self.impact_quantity_lots, name="impact_quantity_lots", minimum=1)
        _require_int(self.quote_decimals, name="quote_decimals", minimum=0)
        if not isinstance(self.log_level, str):
            raise TypeError("log_level must be a string")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise ValueError(f"unknown log_level: {self.log_level!r}")

    @classmethod
    def from_mapping(cls, obj: Mapping[str, Any]) -> EngineConfig:
        if not isinstance(obj, Mapping):
            raise TypeError("config must be a mapping")
        known = {f.name for f in fields(cls)}
        unknown = sorted(str(k) for k in obj.keys() if k not in known)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        return cls(**dict(obj))


def load_config(source: Union[str, Path, Mapping[str, Any], None] = None) -> EngineConfig:
    """
    Build an `EngineConfig` from a YAML path, a mapping, or defaults (None).

    An empty YAML document yields the defaults.
    """
    if source is None:
        return EngineConfig()
    if isinstance(source, Mapping):
        return EngineConfig.from_mapping(source)
    if not isinstance(source, (str, Path)):
        raise TypeError("source must be a path, a mapping or None")
    obj = yaml.safe_load(Path(source).read_text(encoding="utf-8"))
    if obj is None:
        return EngineConfig()
    if not isinstance(obj, dict):
        raise TypeError("config YAML must be a mapping")
    return EngineConfig.from_mapping(obj)


def configure_logging(config: EngineConfig, sink: Any = None) -> int:
    """
    Replace loguru's sinks with one at `config.log_level`.

    For application entry points only; library code never calls this.
    Returns the new handler id.
    """
    logger.remove()
    return logger.add(sink if sink is not None else sys.stderr, level=config.log_level.upper())
