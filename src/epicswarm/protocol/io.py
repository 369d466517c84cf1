"""JSON file helpers shared by the snapshot store, claim marker and event log."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def read_json(path: Path, default: Any) -> Any:
    """Return the decoded file, or *default* when it is missing or unreadable."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        logger.warning("Cannot read %s: %s", path, exc)
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring corrupt JSON in %s: %s", path, exc)
        return default


def write_json_atomic(path: Path, data: Any) -> None:
    """Replace *path* in one rename so readers never see a half-written file."""
    ensure_parent(path)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def append_jsonl(path: Path, item: Any) -> None:
    ensure_parent(path)
    line = json.dumps(item, default=str)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line + "\n")


def remove_file(path: Path) -> bool:
    """Delete *path* if present. Returns True when a file was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
