"""Atomic writers for run artifacts and the run-directory lock."""

from __future__ import annotations

import json
import logging
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def ensure_directory(path: str | Path) -> Path:
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        logger.debug("fsync: cannot open directory %s", path)
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("fsync: sync failed for directory %s", path)
    finally:
        os.close(fd)


def _write_atomically(path: Path, content: str) -> None:
    """Write to a sibling temp file, fsync, then rename over `path`."""

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


def _to_jsonable(row: dict[str, Any] | BaseModel) -> dict[str, Any]:
    return row.model_dump(mode="json") if isinstance(row, BaseModel) else row


def save_json(path: str | Path, payload: dict[str, Any] | BaseModel) -> Path:
    """Write one JSON document (pretty-printed) atomically."""

    file_path = Path(path)
    content = json.dumps(_to_jsonable(payload), ensure_ascii=True, indent=2) + "\n"
    _write_atomically(file_path, content)
    return file_path


def save_jsonl(path: str | Path, rows: list[dict[str, Any] | BaseModel]) -> Path:
    """Write one JSON object per line atomically; pydantic models are dumped in JSON mode."""

    file_path = Path(path)
    content = "".join(json.dumps(_to_jsonable(row), ensure_ascii=True) + "\n" for row in rows)
    _write_atomically(file_path, content)
    return file_path


class RunLockError(RuntimeError):
    """Raised when another process already holds the run directory lock."""


def _read_lock_owner(lock_path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


@contextmanager
def run_lock(run_root: str | Path, *, lock_filename: str = ".run.lock") -> Iterator[Path]:
    """Hold an exclusive lock file inside `run_root` for the duration of a classification run."""

    root = ensure_directory(run_root)
    lock_path = root / lock_filename

    try:
        fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as exc:
        owner = _read_lock_owner(lock_path)
        raise RunLockError(
            f"Run directory {root} is locked by pid {owner.get('pid')!r} "
            f"since {owner.get('acquired_at_utc')!r}. "
            f"Remove {lock_path} if that run is no longer active."
        ) from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(
                json.dumps(
                    {"pid": os.getpid(), "acquired_at_utc": datetime.now(UTC).isoformat()},
                    ensure_ascii=True,
                )
                + "\n"
            )
            handle.flush()
            os.fsync(handle.fileno())
        yield lock_path
    finally:
        try:
            lock_path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove run lock %s", lock_path, exc_info=True)
        _fsync_directory(root)
