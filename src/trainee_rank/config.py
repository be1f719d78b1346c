"""Configuration file management for trainee-rank.

Reads and writes ~/.trainee-rank/config.json for settings that don't belong in the DB
(database location, a custom level table).
"""
from __future__ import annotations

import json
from pathlib import Path

from trainee_rank.levels import DEFAULT_CATALOG, LevelCatalog

DEFAULT_CONFIG_PATH: Path = Path.home() / ".trainee-rank" / "config.json"


def load_config(config_path: Path | None = None) -> dict:
    """Load config from JSON file. Returns {} if file missing or invalid."""
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config(data: dict, config_path: Path | None = None) -> None:
    """Write config dict to JSON file. Creates parent dirs if needed."""
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


def get_db_path(config_path: Path | None = None) -> Path | None:
    """Return the configured database path, or None if not set."""
    config = load_config(config_path)
    raw = config.get("db_path")
    if raw:
        return Path(raw)
    return None


def set_db_path(db_path: Path, config_path: Path | None = None) -> None:
    """Persist the database path to config."""
    config = load_config(config_path)
    config["db_path"] = str(db_path)
    save_config(config, config_path)


def get_level_catalog(config_path: Path | None = None) -> LevelCatalog:
    """Return the configured level table, or the default eight-level catalog.

    A "levels" entry must be a list of dicts with id, name, min_points and
    max_points (null for the top level). An invalid table raises CatalogError.
    """
    config = load_config(config_path)
    rows = config.get("levels")
    if not rows:
        return DEFAULT_CATALOG
    return LevelCatalog.from_dicts(rows)
