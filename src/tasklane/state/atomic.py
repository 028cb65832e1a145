"""Atomic replace helpers shared by every store that owns a file."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

from tasklane.errors import CorruptStoreError

logger = logging.getLogger(__name__)


def serialize_json(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2) + "\n"


def atomic_write_text(path: Path, content: str) -> None:
    """Write text to path atomically (temp file in the same directory + rename)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        dir=str(target.parent),
        prefix=".tmp_",
        suffix=target.suffix or ".tmp",
        text=True,
    )
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except BaseException:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise
    logger.debug("Replaced %s (%d bytes)", target, len(content))


def atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    atomic_write_text(path, serialize_json(payload))


def read_json_document(path: Path) -> dict[str, Any] | None:
    """Return the parsed JSON object at path, or None when the file is absent.

    A present file that does not parse into a JSON object raises
    CorruptStoreError; it is never treated as empty.
    """
    target = Path(path)
    try:
        raw = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except UnicodeDecodeError as exc:
        raise CorruptStoreError(f"Store is not valid UTF-8: {target}", path=target) from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CorruptStoreError(f"Store is not valid JSON: {target} ({exc})", path=target) from exc
    if not isinstance(data, dict):
        raise CorruptStoreError(f"Store must contain a JSON object: {target}", path=target)
    return data
