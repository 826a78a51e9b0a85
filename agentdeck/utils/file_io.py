"""
JSON document helpers shared by the file-backed stores.

Writes go to a temp file first, the current file is copied to ``.bak``,
and the temp file is atomically moved over the target. Reads distinguish
"missing" (``None``) from "unreadable" (``CorruptStateError``).
"""

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from agentdeck.utils.errors import CorruptStateError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Naive UTC now, the form every stored timestamp uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(moment: Optional[datetime] = None) -> str:
    return (moment or utc_now()).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into a naive UTC datetime. Returns None on failure."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def read_json(path: Path) -> Optional[Dict[str, Any]]:
    """Read a JSON object from ``path``.

    Returns None when the file does not exist. Raises CorruptStateError when
    the file exists but cannot be parsed into an object.
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptStateError(path, str(e)) from e
    if not isinstance(data, dict):
        raise CorruptStateError(path, f"expected a JSON object, got {type(data).__name__}")
    return data


def write_json_atomic(path: Path, data: Dict[str, Any], backup: bool = True) -> None:
    """Atomically replace ``path`` with ``data`` serialized as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f"{path.name}.tmp")
    backup_path = path.with_name(f"{path.name}.bak")

    with open(temp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        f.flush()
        os.fsync(f.fileno())

    if backup and path.exists():
        shutil.copy2(path, backup_path)

    os.replace(temp_path, path)


def quarantine(path: Path, moment: Optional[datetime] = None) -> Optional[Path]:
    """Move an unreadable file aside so a following write does not destroy it."""
    path = Path(path)
    if not path.exists():
        return None
    stamp = (moment or utc_now()).strftime("%Y%m%d_%H%M%S")
    target = path.with_name(f"{path.name}.corrupt-{stamp}")
    os.replace(path, target)
    logger.warning(f"Preserved unreadable file {path} as {target}")
    return target


def remove_quietly(path: Path) -> bool:
    """Delete ``path`` and its temp/backup siblings. Returns True if the main file existed."""
    path = Path(path)
    existed = path.exists()
    for candidate in (path, path.with_name(f"{path.name}.tmp"), path.with_name(f"{path.name}.bak")):
        try:
            candidate.unlink()
        except FileNotFoundError:
            continue
    return existed
