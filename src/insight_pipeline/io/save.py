"""Utilities for saving run artifacts."""

from __future__ import annotations

import json
import logging
import os
import uuid
from contextlib import suppress
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Row = dict[str, Any] | BaseModel


def ensure_directory(path: str | Path) -> Path:
    """Create a directory if it does not exist and return it."""

    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _row_payload(row: Row) -> dict[str, Any]:
    """Models are written with their wire aliases, dicts as-is."""

    if isinstance(row, BaseModel):
        return row.model_dump(mode="json", by_alias=True)
    return row


def _to_json_line(row: Row) -> str:
    return json.dumps(_row_payload(row), ensure_ascii=True) + "\n"


def _fsync_directory(path: Path) -> None:
    """Best-effort fsync so a rename or append survives a crash."""

    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        logger.debug("fsync: unable to open directory %s", path)
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("fsync: sync failed for directory %s", path)
    finally:
        os.close(fd)


def _atomic_write_text(path: Path, content: str) -> None:
    """Replace file contents via a temp file in the same directory plus rename."""

    ensure_directory(path.parent)
    temp_path = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
        _fsync_directory(path.parent)
    finally:
        if temp_path.exists():
            with suppress(OSError):
                temp_path.unlink()


def save_json(path: str | Path, payload: dict[str, Any]) -> Path:
    """Atomically write one JSON object, e.g. a run manifest."""

    file_path = Path(path)
    _atomic_write_text(file_path, json.dumps(payload, ensure_ascii=True, indent=2) + "\n")
    return file_path


def save_jsonl(path: str | Path, rows: list[Row]) -> Path:
    """Atomically write a whole JSONL file."""

    file_path = Path(path)
    _atomic_write_text(file_path, "".join(_to_json_line(row) for row in rows))
    return file_path


def append_jsonl(path: str | Path, rows: list[Row]) -> Path:
    """Append records to a JSONL log, syncing before returning."""

    file_path = Path(path)
    ensure_directory(file_path.parent)
    if not rows:
        return file_path

    with file_path.open("a", encoding="utf-8") as handle:
        handle.write("".join(_to_json_line(row) for row in rows))
        handle.flush()
        os.fsync(handle.fileno())
    return file_path
