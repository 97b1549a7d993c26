from __future__ import annotations

import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import appdirs  # type: ignore[import-untyped]
import yaml  # type: ignore[import-untyped]

from market_sync.config_models import (
    AppConfig,
    CandlesConfig,
    EndpointsConfig,
    OrderBookConfig,
    ReconcilerConfig,
    RestConfig,
    StreamConfig,
    SymbolSupportConfig,
    TradesConfig,
)

APP_NAME = "market_sync"
ALLOWED_ENVS = {"local", "dev", "prod"}
DEFAULT_ENV = "local"

SectionT = TypeVar("SectionT")

_SECTIONS: Dict[str, Type[Any]] = {
    "endpoints": EndpointsConfig,
    "rest": RestConfig,
    "stream": StreamConfig,
    "reconciler": ReconcilerConfig,
    "order_book": OrderBookConfig,
    "trades": TradesConfig,
    "candles": CandlesConfig,
    "symbol_support": SymbolSupportConfig,
}

logger = logging.getLogger(__name__)


def get_config_dir() -> Path:
    """
    Returns the OS-specific configuration directory using appdirs.
    """
    return Path(appdirs.user_config_dir(APP_NAME))


def _deep_merge_dicts(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml_mapping(path: Path, event: str) -> Dict[str, Any]:
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning(
            "Configuration file is not a mapping; ignoring it",
            extra={"event": event, "config_path": str(path)},
        )
        return {}
    return data


def _coerce_value(
    section: str, name: str, value: Any, default: Any, config_path: Path
) -> Any:
    """Validate a single config value against the type of its default."""

    field_name = f"{section}.{name}"

    if isinstance(default, str):
        if isinstance(value, str) and value:
            return value
    elif isinstance(default, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(default, int):
        if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
            return value
    elif isinstance(default, float):
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return float(value)
    else:
        return value

    logger.warning(
        "%s is invalid; using default",
        field_name,
        extra={"event": "config_invalid_value", "field": field_name, "config_path": str(config_path)},
    )
    return default


def _build_section(
    cls: Type[SectionT], section: str, data: Any, config_path: Path
) -> SectionT:
    defaults = cls()
    if data is None:
        return defaults
    if not isinstance(data, dict):
        logger.warning(
            "%s config is not a mapping; using defaults",
            section,
            extra={"event": f"config_invalid_{section}", "config_path": str(config_path)},
        )
        return defaults

    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    for key in data:
        if key not in known:
            logger.warning(
                "Unknown config key %s.%s; ignoring",
                section,
                key,
                extra={"event": "config_unknown_key", "config_path": str(config_path)},
            )

    values = {
        f.name: _coerce_value(section, f.name, data[f.name], getattr(defaults, f.name), config_path)
        for f in fields(cls)  # type: ignore[arg-type]
        if f.name in data
    }
    return cls(**values)


def load_config(config_path: Optional[Path] = None, env: Optional[str] = None) -> AppConfig:
    """
    Loads the application configuration from the default location or a specified
    path, overlaying ``config.<env>.yaml`` when present.
    """
    if config_path is None:
        config_path = get_config_dir() / "config.yaml"

    config_path = Path(config_path).expanduser()

    initial_env = env if env is not None else os.environ.get("MARKET_SYNC_ENV")
    if initial_env not in ALLOWED_ENVS:
        logger.warning(
            "Invalid or missing environment '%s'; defaulting to '%s'",
            initial_env,
            DEFAULT_ENV,
            extra={"event": "config_invalid_env", "config_path": str(config_path)},
        )
        effective_env = DEFAULT_ENV
    else:
        effective_env = initial_env

    if not config_path.exists():
        logger.warning(
            "Configuration file not found; using defaults",
            extra={"event": "config_missing_file", "config_path": str(config_path)},
        )
        raw_config: Dict[str, Any] = {}
    else:
        raw_config = _read_yaml_mapping(config_path, "config_invalid_format")

    env_config_path = config_path.parent / f"config.{effective_env}.yaml"
    if env_config_path.exists():
        env_config = _read_yaml_mapping(env_config_path, "config_invalid_env_file")
        raw_config = _deep_merge_dicts(raw_config, env_config)

    sections = {
        name: _build_section(cls, name, raw_config.get(name), config_path)
        for name, cls in _SECTIONS.items()
    }
    return AppConfig(env=effective_env, **sections)
