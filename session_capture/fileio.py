"""
Atomic file helpers shared by the sink, state cache and metadata store.

Every JSON document the orchestrator rewrites goes through write_json_atomic:
temp file + os.replace, so readers never observe a half-written document.
"""
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Union


PathLike = Union[str, Path]


def write_json_atomic(path: PathLike, data: Any, indent: int = 2) -> None:
    """
    Serialize data to JSON and atomically replace path.

    Args:
        path: Destination file
        data: JSON-serializable object
        indent: Pretty-print indent

    Raises:
        OSError: If the temp file cannot be written or renamed
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # One temp file per call: concurrent writers never share a temp name
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    ) as f:
        temp_path = f.name
        try:
            json.dump(data, f, indent=indent, default=str)
        except (TypeError, ValueError):
            f.close()
            os.unlink(temp_path)
            raise
    try:
        os.replace(temp_path, path)
    except OSError:
        os.unlink(temp_path)
        raise


def read_json(path: PathLike, default: Any = None) -> Any:
    """
    Read a JSON document, returning default when it is missing.

    Raises:
        ValueError: If the file exists but is not valid JSON
    """
    path = Path(path)
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def append_line(path: PathLike, line: str) -> None:
    """Append one newline-terminated line, creating the file if needed."""
    with open(path, "a", encoding="utf-8") as f:
        f.write(line if line.endswith("\n") else line + "\n")


def iso_now() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
