from __future__ import annotations

from pathlib import Path
from typing import Dict

import yaml

DEFAULT_CONFIG: Dict[str, object] = {
    "db_path": "obligations.db",
    "backend": "obligation_tracker.database.SQLiteBackend",
    "planned_obligations_file": "planned.yaml",
    "max_enumeration_steps": 500,
    "max_catch_up": 60,
    "resource_timeout": 5.0,
    "log_level": "INFO",
    "output_dir": "./data",
    "output_modules": {
        "csv": "obligation_tracker.outputs.csv_output.CSVOutput",
    },
}


def _merge_defaults(current: Dict[str, object], defaults: Dict[str, object]) -> Dict[str, object]:
    """Fill keys missing from *current* with *defaults*, descending into nested mappings."""
    merged = {**defaults, **current}
    for key, default in defaults.items():
        if isinstance(default, dict) and isinstance(current.get(key), dict):
            merged[key] = _merge_defaults(current[key], default)
    return merged


def load_config(path: str | Path | None = None) -> Dict[str, object]:
    """Read a YAML config file, falling back to defaults for anything missing."""
    if path is None or not Path(path).exists():
        return _merge_defaults({}, DEFAULT_CONFIG)
    with Path(path).open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return _merge_defaults(data, DEFAULT_CONFIG)


def save_config(config: Dict[str, object], path: str | Path) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as fp:
        yaml.safe_dump(config, fp, sort_keys=False)
