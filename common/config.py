from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"config file is not valid yaml: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def stringify_values(cfg: dict[str, Any], where: str = "config") -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in cfg.items():
        if isinstance(value, (dict, list)):
            raise ConfigError(f"{where} value for {key} must be a scalar")
        if value is None:
            out[str(key)] = ""
        elif isinstance(value, bool):
            # yaml turns bare yes/no into booleans
            out[str(key)] = "yes" if value else "no"
        else:
            out[str(key)] = str(value)
    return out
