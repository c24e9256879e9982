from __future__ import annotations

import json
import logging
import os
from dataclasses import fields
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .models import DecisionRules, MetricThresholds, OptimizeOptions

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "imgoptim.config.json"
LOG_LEVEL_ENV_VAR = "IMGOPTIM_LOG_LEVEL"

DEFAULT_SETTINGS: dict[str, Any] = {
    "output_dir": "./optimized",
    "formats": ["webp"],
    "sizes": [],
    "quality": "auto",
    "cdn_base_url": "",
    "parallel": 4,
    "cache_enabled": True,
    "auto_format": False,
    "generate_placeholders": False,
    "placeholder_kind": "preview",
    "placeholder_width": 20,
    "placeholder_quality": 40,
    "update_codebase": False,
    "codebase_root": None,
    "rewrite_format": None,
    "input_root": None,
    "native_tools": True,
    "metric_thresholds": {},
    "decision_rules": {},
}


def find_config(start: Path | str | None = None) -> Path | None:
    directory = Path(start or os.getcwd()).resolve()
    for candidate in (directory, *directory.parents):
        path = candidate / CONFIG_FILENAME
        if path.is_file():
            return path
    return None


def load_settings(path: Path | str | None) -> dict[str, Any]:
    settings = dict(DEFAULT_SETTINGS)
    if path is None:
        return settings
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as handle:
            loaded = json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON (line {exc.lineno}): {exc.msg}") from exc
    if not isinstance(loaded, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    unknown = sorted(set(loaded) - set(DEFAULT_SETTINGS))
    if unknown:
        raise ConfigError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    base = path.resolve().parent
    for key in ("output_dir", "codebase_root", "input_root"):
        value = loaded.get(key)
        if value:
            loaded[key] = str(base / Path(value).expanduser())
    settings.update(loaded)
    logger.info(f"[config] loaded {path}")
    return settings


def _nested(cls: type, values: Any, name: str) -> Any:
    if isinstance(values, cls):
        return values
    if not isinstance(values, dict):
        raise ConfigError(f"{name} must be an object")
    known = {item.name for item in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown {name} keys: {', '.join(unknown)}")
    return cls(**values)


def build_options(settings: dict[str, Any]) -> OptimizeOptions:
    values = dict(settings)
    quality = values.get("quality")
    if isinstance(quality, str) and quality != "auto":
        try:
            values["quality"] = int(quality)
        except ValueError as exc:
            raise ConfigError(f"quality must be an integer 1-100 or 'auto', got {quality!r}") from exc
    for key in ("output_dir", "codebase_root", "input_root"):
        if values.get(key):
            values[key] = Path(values[key])
    values["formats"] = tuple(values.get("formats") or ())
    values["sizes"] = tuple(values.get("sizes") or ())
    values["metric_thresholds"] = _nested(MetricThresholds, values.get("metric_thresholds") or {}, "metric_thresholds")
    values["decision_rules"] = _nested(DecisionRules, values.get("decision_rules") or {}, "decision_rules")
    try:
        return OptimizeOptions(**values)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc


def load_options(path: Path | str | None = None, **overrides: Any) -> OptimizeOptions:
    settings = load_settings(path)
    settings.update({key: value for key, value in overrides.items() if value is not None})
    return build_options(settings)
