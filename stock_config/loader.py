"""
Configuration Loader (``stock_config.loader``).

Responsibility
--------------
Parses a YAML configuration file into the frozen ``stock_config.schema``
dataclasses.  Callers go through ``stock_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown section or key  -> ``ValueError``.
* Wrong value type  -> ``ValueError``.
"""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import DatabaseConfig, EngineConfig, LoggingConfig, TransferConfig

_SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "transfers": TransferConfig,
    "logging": LoggingConfig,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def _coerce(section: str, name: str, value: Any, default: Any) -> Any:
    # bool is an int subclass; keep the two apart
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{section}.{name} must be a boolean, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{section}.{name} must be a number, got {value!r}")
        return float(value)
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{section}.{name} must be an integer, got {value!r}")
        return value
    if not isinstance(value, str):
        raise ValueError(f"{section}.{name} must be a string, got {value!r}")
    return value


def _parse_section(section: str, cls: type, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Section {section!r} must be a mapping")
    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys in {section!r}: {sorted(unknown)}")
    kwargs = {
        name: _coerce(section, name, value, getattr(defaults, name))
        for name, value in data.items()
    }
    return cls(**kwargs)


def parse_engine_config(data: dict[str, Any]) -> EngineConfig:
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")
    return EngineConfig(
        **{name: _parse_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}
    )


def load_engine_config(path: Path) -> EngineConfig:
    return parse_engine_config(load_yaml_file(path))
