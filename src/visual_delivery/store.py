"""
Atomic JSON record store.

Every structured file in the data directory is read and written through this
module. Writes go to a uniquely named temporary sibling and are renamed over
the target while holding the target's lock, so readers only ever see the old
or the new contents. Read-modify-write goes through ``update`` which keeps
the whole span inside one lock.

Corrupted files are copied aside to ``<name>.corrupted.<ms>`` and replaced by
an empty default. The caller is not told; availability wins over the lost
contents.
"""

import json
import logging
import os
import secrets
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

from visual_delivery.errors import CorruptedRecord
from visual_delivery.locking import LOCK_TIMEOUT, FileLock

logger = logging.getLogger(__name__)


def _millis() -> int:
    return int(time.time() * 1000)


def write_file_atomically(path: Path, content: str):
    """Write ``content`` to a temp sibling then rename it over ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_file = path.parent / f".tmp_{_millis()}_{secrets.token_hex(4)}"
    try:
        tmp_file.write_text(content, encoding='utf-8')
        os.replace(tmp_file, path)
    except BaseException:
        try:
            tmp_file.unlink()
        except FileNotFoundError:
            pass
        raise


def _parse(path: Path, raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptedRecord(f"Corrupted JSON at {path}: {e}") from e


def quarantine(path: Path) -> Optional[Path]:
    """Copy a corrupted file aside. Returns the backup path."""
    path = Path(path)
    backup = path.with_name(f"{path.name}.corrupted.{_millis()}")
    try:
        shutil.copyfile(path, backup)
    except FileNotFoundError:
        return None
    logger.warning(f"Corrupted JSON at {path}, backed up to {backup}")
    return backup


class RecordStore:
    """Locked, crash-safe JSON reads and writes."""

    def __init__(self, lock_timeout: float = LOCK_TIMEOUT):
        self.lock_timeout = lock_timeout

    def lock(self, path: Path) -> FileLock:
        return FileLock(path, timeout=self.lock_timeout)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_array(self, path: Path) -> list:
        """
        Read a JSON array.

        A missing file is materialized as ``[]``. A corrupt or non-array file
        is quarantined (when corrupt) and reset to ``[]``.
        """
        path = Path(path)
        try:
            raw = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            self._reset_array(path, corrupted=False)
            return []

        try:
            data = _parse(path, raw)
        except CorruptedRecord:
            self._reset_array(path, corrupted=True)
            return []

        if not isinstance(data, list):
            logger.warning(f"{path} is not an array, resetting to []")
            self._reset_array(path, corrupted=False)
            return []
        return data

    def _reset_array(self, path: Path, corrupted: bool):
        with self.lock(path):
            if corrupted:
                quarantine(path)
            elif path.exists():
                # Someone wrote a valid file while we were deciding
                try:
                    if isinstance(json.loads(path.read_text(encoding='utf-8')), list):
                        return
                except (OSError, json.JSONDecodeError):
                    quarantine(path)
            write_file_atomically(path, '[]')

    def read_object(self, path: Path) -> Optional[dict]:
        """
        Read a JSON object. Missing, non-object and corrupt files all read as None.

        Corrupt files are quarantined but the original is left in place.
        """
        path = Path(path)
        try:
            raw = path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None

        try:
            data = _parse(path, raw)
        except CorruptedRecord:
            quarantine(path)
            return None

        if not isinstance(data, dict):
            return None
        return data

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write(self, path: Path, value):
        path = Path(path)
        with self.lock(path):
            write_file_atomically(path, json.dumps(value, indent=2))

    def update(self, path: Path, fn: Callable, default: Callable = list):
        """
        Read-modify-write ``path`` inside a single lock span.

        ``fn`` receives the current value (``default()`` when the file is
        missing, corrupt or of the wrong shape) and returns the value to
        persist. The persisted value is returned.
        """
        path = Path(path)
        with self.lock(path):
            data = default()
            try:
                raw = path.read_text(encoding='utf-8')
            except FileNotFoundError:
                raw = None

            if raw is not None:
                try:
                    parsed = _parse(path, raw)
                except CorruptedRecord:
                    quarantine(path)
                else:
                    if isinstance(parsed, type(data)):
                        data = parsed

            result = fn(data)
            write_file_atomically(path, json.dumps(result, indent=2))
            return result

    # The explicit transaction form: every mutation of a shared file goes here.
    with_locked_file = update

    def delete(self, path: Path):
        path = Path(path)
        with self.lock(path):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
