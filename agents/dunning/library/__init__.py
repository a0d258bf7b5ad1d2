"""Bundled content library for the dunning engine.

YAML documents shipped next to this module:

- ``workflows.yaml``: system-default workflow steps per aging bucket
- ``templates.yaml``: pre-written email and SMS content per aging bucket
- ``personas.yaml``: bucket personas and tone intensity modifiers
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

LIBRARY_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def _load(path: str) -> dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid library file format: {path}")
    return data


def load_library(name: str, directory: Path | str | None = None) -> dict[str, Any]:
    """Load a library document by name.

    Args:
        name: Document name without extension (e.g. ``"templates"``)
        directory: Optional override directory, used for owner-specific
            libraries and tests

    Returns:
        Parsed YAML mapping

    Raises:
        FileNotFoundError: If the document does not exist
        ValueError: If the document is not a mapping
    """
    base = Path(directory) if directory is not None else LIBRARY_DIR
    path = base / f"{name}.yaml"
    if not path.exists():
        raise FileNotFoundError(f"Library document not found: {path}")
    return _load(str(path))
