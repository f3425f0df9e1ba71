"""
Configuration
=============
Defaults for the access map, each overridable from the environment.

Exports:
    AppConfig: resolved settings.
    load_config(): build an AppConfig from os.environ.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

REPO_ROOT = Path(__file__).resolve().parent

DEFAULT_DATA_DIR = REPO_ROOT / "data"
DEFAULT_DEBOUNCE_MS = 200
DEFAULT_SCOPE = "01"
DEFAULT_HTTP_TIMEOUT = 30.0

# Northern Japan, used until a regional border is available
DEFAULT_BOUNDS = ((41.3, 139.3), (45.6, 145.9))


@dataclass(frozen=True)
class AppConfig:
    data_dir: Path = DEFAULT_DATA_DIR
    data_url: Optional[str] = None
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    default_scope: str = DEFAULT_SCOPE
    log_level: int = logging.INFO
    log_file: Optional[str] = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT


def _int_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ValueError(f"{key} must be >= 0, got {value}")
    return value


def _float_env(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{key} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{key} must be > 0, got {value}")
    return value


def _level_env(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if not raw:
        return default
    level = logging.getLevelName(raw.upper())
    if not isinstance(level, int):
        raise ValueError(f"{key} must be a logging level name, got {raw!r}")
    return level


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    env = os.environ if env is None else env
    return AppConfig(
        data_dir=Path(env.get("ACCESSMAP_DATA_DIR", DEFAULT_DATA_DIR)).expanduser(),
        data_url=env.get("ACCESSMAP_DATA_URL") or None,
        debounce_ms=_int_env(env, "ACCESSMAP_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS),
        default_scope=env.get("ACCESSMAP_DEFAULT_SCOPE", DEFAULT_SCOPE),
        log_level=_level_env(env, "ACCESSMAP_LOG_LEVEL", logging.INFO),
        log_file=env.get("ACCESSMAP_LOG_FILE") or None,
        http_timeout=_float_env(env, "ACCESSMAP_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
    )
