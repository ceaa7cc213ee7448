from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from flask import current_app


RECURSIVE_DELETE = "fs.recursive_delete"
RECURSIVE_SIZE = "fs.recursive_size"
AUTO_EXTRACT_ZIP = "fs.auto_extract_zip"
EXPORT_TRUST_FOLDER_ACCESS = "export.trust_folder_access"

DEFAULT_FLAGS: dict[str, bool] = {
    RECURSIVE_DELETE: False,
    RECURSIVE_SIZE: False,
    AUTO_EXTRACT_ZIP: True,
    EXPORT_TRUST_FOLDER_ACCESS: False,
}

TRUTHY = {"1", "true", "yes", "on"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY
    return bool(value)


def load_feature_flags(path: str | None) -> dict[str, bool]:
    """Read a JSON flag file, either ``{"flags": {...}}`` or a flat mapping. Unreadable files count as empty."""
    if not path or not Path(path).is_file():
        return {}

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(raw, dict):
        return {}

    section = raw.get("flags", raw)
    if not isinstance(section, dict):
        return {}
    return {str(key): _as_bool(value) for key, value in section.items()}


def flag_enabled(name: str, *, default: bool | None = None) -> bool:
    if default is None:
        default = DEFAULT_FLAGS.get(name, False)

    flags = current_app.config.get("FEATURE_FLAGS") or {}
    if not isinstance(flags, dict) or flags.get(name) is None:
        return default
    return _as_bool(flags[name])
