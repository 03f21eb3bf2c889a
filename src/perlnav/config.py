from __future__ import annotations

from datetime import date, datetime, time
from pathlib import Path
from typing import TypeAlias
import tomllib

DEFAULT_CONFIG_NAME = "perlnav.toml"
SETTINGS_SECTION = "perlnavigator"
SERVER_SECTION = "server"
DEFAULT_ANALYSIS_TIMEOUT_SECONDS = 30.0

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def _section(data: TomlTable, name: str) -> TomlTable:
    section = data.get(name, {})
    return section if isinstance(section, dict) else {}


def settings_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    return _section(load_config(root=root, config_path=config_path), SETTINGS_SECTION)


def server_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    return _section(load_config(root=root, config_path=config_path), SERVER_SECTION)


def analysis_timeout_seconds(section: TomlTable | None) -> float:
    if not isinstance(section, dict):
        return DEFAULT_ANALYSIS_TIMEOUT_SECONDS
    value = section.get("analysis_timeout_seconds")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_ANALYSIS_TIMEOUT_SECONDS
    if value <= 0:
        return DEFAULT_ANALYSIS_TIMEOUT_SECONDS
    return float(value)


def merge_payload(payload: TomlTable, defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged
