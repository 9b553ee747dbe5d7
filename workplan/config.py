"""Load and validate .workplan/config.yaml."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


# Default config values
DEFAULTS: dict[str, Any] = {
    "store": ".workplan/workplan.db",
    "tree": {
        "max_depth": 10,
    },
    "ids": {
        "scheme": "work_package",
        "project_code_fallback": "UNK",
        "vessel_prefixes": ["MT", "KM", "MV", "MS"],
        "reservation_ttl_seconds": 900,
    },
    "dates": {
        "unset_values": ["", "mm/dd/yyyy"],
        "max_duration_days": 10000,
        "min_year": 1900,
        "max_years_ahead": 50,
    },
    "migration": {
        "target_scheme": "date",
        "backup_dir": ".workplan/backups",
    },
}

ID_SCHEMES = ("work_package", "date")


class ConfigError(Exception):
    """Raised when config is invalid or missing."""


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base recursively. Override wins on conflicts."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _require_positive_int(section: dict, key: str, label: str) -> None:
    val = section.get(key)
    if not isinstance(val, int) or isinstance(val, bool) or val < 1:
        raise ConfigError(f"'{label}' must be a positive integer, got {val!r}")


def _validate(config: dict) -> None:
    """Validate required fields in config."""
    if not isinstance(config.get("store"), str) or not config["store"].strip():
        raise ConfigError("'store' must be a non-empty path string")

    for section in ("tree", "ids", "dates", "migration"):
        if not isinstance(config.get(section), dict):
            raise ConfigError(f"'{section}' must be a mapping")

    _require_positive_int(config["tree"], "max_depth", "tree.max_depth")

    ids = config["ids"]
    if ids.get("scheme") not in ID_SCHEMES:
        raise ConfigError(
            f"Unsupported id scheme '{ids.get('scheme')}'. Built-in: {', '.join(ID_SCHEMES)}."
        )
    fallback = ids.get("project_code_fallback")
    if not isinstance(fallback, str) or len(fallback) != 3 or not fallback.isalpha():
        raise ConfigError("'ids.project_code_fallback' must be exactly 3 letters")
    if not isinstance(ids.get("vessel_prefixes"), list):
        raise ConfigError("'ids.vessel_prefixes' must be a list")
    _require_positive_int(ids, "reservation_ttl_seconds", "ids.reservation_ttl_seconds")

    dates = config["dates"]
    if not isinstance(dates.get("unset_values"), list):
        raise ConfigError("'dates.unset_values' must be a list")
    _require_positive_int(dates, "max_duration_days", "dates.max_duration_days")
    _require_positive_int(dates, "min_year", "dates.min_year")
    _require_positive_int(dates, "max_years_ahead", "dates.max_years_ahead")

    migration = config["migration"]
    if migration.get("target_scheme") not in ID_SCHEMES:
        raise ConfigError(
            f"Unsupported migration target scheme '{migration.get('target_scheme')}'. "
            f"Built-in: {', '.join(ID_SCHEMES)}."
        )


def load_config(project_root: Path | None = None) -> dict:
    """Load config from .workplan/config.yaml under project_root.

    Falls back to cwd if project_root is None. Merges with DEFAULTS
    so callers always get a full config dict.
    """
    root = Path(project_root) if project_root else Path.cwd()
    config_path = root / ".workplan" / "config.yaml"

    if not config_path.exists():
        raise ConfigError(f"Config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping, got {type(raw).__name__}")

    config = _deep_merge(DEFAULTS, raw)
    _validate(config)
    return config


def resolve_store_path(config: dict, project_root: Path) -> Path:
    """Resolve the SQLite store path relative to project_root."""
    path = Path(config["store"]).expanduser()
    return path if path.is_absolute() else project_root / path


def resolve_backup_dir(config: dict, project_root: Path) -> Path:
    """Resolve the migration backup directory relative to project_root."""
    path = Path(config["migration"]["backup_dir"]).expanduser()
    return path if path.is_absolute() else project_root / path
