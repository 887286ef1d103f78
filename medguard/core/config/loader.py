from __future__ import annotations

import json
import os
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from medguard.core.config.models import MedguardConfig
from medguard.core.errors import ConfigError


def _read_json(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError("Configuration file is unreadable.", path=path, error=str(e)) from e
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be an object.", path=path)
    return data


def load_config(path: Optional[str] = None, *, env: Optional[Mapping[str, str]] = None) -> MedguardConfig:
    """
    Load config from an optional JSON file, then apply environment overrides.

    The vault key is taken from the environment variable named by
    `vault.key_env` when present; it wins over any file value.
    """
    env = os.environ if env is None else env
    raw = _read_json(path) if path else {}
    try:
        cfg = MedguardConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError("Invalid configuration.", path=path, errors=e.errors(include_input=False)) from e

    key_from_env = str(env.get(cfg.vault.key_env) or "").strip()
    if key_from_env:
        merged = cfg.model_dump()
        merged["vault"]["key_hex"] = key_from_env
        try:
            cfg = MedguardConfig.model_validate(merged)
        except ValidationError as e:
            raise ConfigError("Invalid vault key in environment.", variable=cfg.vault.key_env) from e
    return cfg
