"""Helpers for reading and writing settings, outcomes and event logs."""

import json
import os
from pathlib import Path
from typing import Any, Union

PathLike = Union[str, Path]


def read_json_file(path: PathLike) -> Any:
    """Load JSON content from disk."""

    target = Path(path)
    if not target.exists():
        raise FileNotFoundError(f"JSON file not found: {path}")
    return json.loads(target.read_text(encoding="utf-8"))


def write_json(path: Path, payload: Any) -> None:
    """Replace ``path`` with indented JSON; readers never see a partial file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.with_name(f".{path.name}.tmp")
    with staging.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.write("\n")
    os.replace(staging, path)


def append_json_line(path: Path, payload: Any) -> None:
    """Append one compact JSON document followed by a newline."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
