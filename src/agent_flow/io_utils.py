"""Atomic JSON writes and tolerant JSON/YAML reads for state files."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, default=str)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse and IO failures are reported instead of raised so callers can avoid
    overwriting corrupted durable state files.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"
    except Exception as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"


def _render_json_for_prompt(data: Any, max_chars: int = 20000) -> tuple[str, bool]:
    try:
        text = json.dumps(data, indent=2, sort_keys=True, default=str)
    except (TypeError, ValueError):
        text = str(data)
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars], True
