# core/storage.py
"""
File-backed JSON storage primitives

Every shared document (tokens, workflow states, reviews, email counters) is a
single JSON file. Writers hold a cross-process lock on ``<file>.lock`` for the
whole read-modify-write cycle and replace the file atomically, so readers
never observe a half-written document.
"""

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from filelock import FileLock, Timeout

from core.errors import CorruptFileError, StorageError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

LOCK_TIMEOUT_SECONDS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; a trailing ``Z`` and naive values are read as UTC"""
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@contextmanager
def locked(path: PathLike, timeout: float = LOCK_TIMEOUT_SECONDS) -> Iterator[None]:
    """Hold an exclusive lock for ``path`` across processes"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(path) + '.lock', timeout=timeout)
    try:
        with lock:
            yield
    except Timeout as e:
        raise StorageError(f"Timed out waiting for lock on {path.name}") from e


def read_json(path: PathLike) -> Optional[Dict[str, Any]]:
    """
    Load a JSON document

    Returns None when the file does not exist and raises CorruptFileError when
    it cannot be decoded.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding='utf-8')
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageError(f"Failed to read {path}: {e}") from e

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptFileError(f"Corrupted JSON in {path.name}: {e}") from e

    if not isinstance(payload, dict):
        raise CorruptFileError(f"Expected a JSON object in {path.name}")
    return payload


def write_json(path: PathLike, payload: Dict[str, Any]) -> None:
    """Write ``payload`` to ``path`` through a temporary file and ``os.replace``"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f'.{path.name}.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise StorageError(f"Failed to write {path}: {e}") from e


def delete_file(path: PathLike) -> bool:
    """Remove ``path``; returns False when nothing was there"""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    return True


def discard_lock(path: PathLike) -> None:
    """Remove the lock file of a deleted document; call outside ``locked``"""
    try:
        Path(str(path) + '.lock').unlink()
    except FileNotFoundError:
        pass


def iter_json_files(directory: PathLike) -> Iterator[Path]:
    """Yield the ``*.json`` files of a directory, skipping dot files"""
    directory = Path(directory)
    if not directory.is_dir():
        return
    for path in sorted(directory.glob('*.json')):
        if path.name.startswith('.'):
            continue
        yield path
