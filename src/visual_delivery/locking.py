"""
Advisory cross-process file locking.

A lock on ``path`` is the side file ``path.lock``, created with O_EXCL and
holding the owner's pid. Creation failing means someone else holds it. If the
recorded owner no longer exists, or the file never got a pid and is older
than ORPHAN_LOCK_AGE, the lock is stale and is reclaimed at once; otherwise
we poll until the timeout and give up with LockTimeout.

Locks are not re-entrant: acquiring the same path twice from one operation
waits on itself until the timeout.
"""

import logging
import os
import secrets
import time
from contextlib import contextmanager
from pathlib import Path

from visual_delivery.errors import LockTimeout

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = 5.0  # seconds
LOCK_RETRY_INTERVAL = 0.05  # seconds
ORPHAN_LOCK_AGE = 10.0  # seconds a lock may stay without an owner pid


def lock_path_for(path: Path) -> Path:
    path = Path(path)
    return path.with_name(path.name + '.lock')


def pid_alive(pid: int) -> bool:
    """Check whether a process exists without signalling it."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


def _read_owner(lock_path: Path):
    """
    Returns (pid, stat) of the lock file, (None, None) when it is gone, and
    pid -1 when the holder created the file but has not written its pid yet.
    """
    try:
        stat = os.stat(lock_path)
    except FileNotFoundError:
        return None, None
    try:
        return int(Path(lock_path).read_text().strip()), stat
    except FileNotFoundError:
        return None, None
    except (OSError, ValueError):
        return -1, stat


class FileLock:
    """
    Exclusive-create lock over a single file path.

    Usage:
        with FileLock(path):
            ...  # read-modify-write path
    """

    def __init__(self, path: Path, timeout: float = LOCK_TIMEOUT,
                 retry_interval: float = LOCK_RETRY_INTERVAL,
                 orphan_age: float = ORPHAN_LOCK_AGE):
        self.path = Path(path)
        self.lock_path = lock_path_for(self.path)
        self.timeout = timeout
        self.retry_interval = retry_interval
        self.orphan_age = orphan_age
        self._held = False

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)
        return True

    def _is_stale(self, owner: int, stat) -> bool:
        if owner == -1:
            # A holder that died between create and write never fills in its pid
            return time.time() - stat.st_mtime > self.orphan_age
        return not pid_alive(owner)

    def _reclaim(self, owner: int, stat):
        """
        Remove the stale lock we inspected, and only that one.

        The lock is renamed aside first; if what we moved is not the file we
        judged stale, another contender already replaced it and it is put back.
        """
        aside = self.lock_path.with_name(f"{self.lock_path.name}.stale.{os.getpid()}.{secrets.token_hex(4)}")
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return
        try:
            moved_owner, moved_stat = _read_owner(aside)
            same = (
                moved_owner == owner
                and moved_stat is not None
                and moved_stat.st_ino == stat.st_ino
                and moved_stat.st_mtime_ns == stat.st_mtime_ns
            )
            if not same:
                try:
                    os.link(aside, self.lock_path)
                except FileExistsError:
                    logger.warning(f"Live lock {self.lock_path} was replaced while reclaiming a stale one")
        finally:
            try:
                aside.unlink()
            except FileNotFoundError:
                pass

    def acquire(self) -> Path:
        """
        Block until the lock is held or the timeout elapses.

        Returns:
            The lock file path (the release token).

        Raises:
            LockTimeout: if a live holder kept the lock past the timeout.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout

        while True:
            if self._try_create():
                self._held = True
                return self.lock_path

            owner, stat = _read_owner(self.lock_path)
            if owner is None:
                # Released between our attempt and the read
                continue
            if self._is_stale(owner, stat):
                holder = f"pid {owner} is gone" if owner != -1 else "no owner pid"
                logger.warning(f"Reclaiming stale lock {self.lock_path} ({holder})")
                self._reclaim(owner, stat)
                continue

            if time.monotonic() >= deadline:
                raise LockTimeout(f"Lock timeout on {self.path} after {self.timeout}s")
            time.sleep(self.retry_interval)

    def release(self):
        """Remove the lock file. Releasing an already-removed lock is fine."""
        release_lock(self.lock_path)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def release_lock(lock_path: Path):
    try:
        Path(lock_path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Lock release error on {lock_path}: {e}")


@contextmanager
def file_lock(path: Path, timeout: float = LOCK_TIMEOUT):
    """Context manager for holding the lock on ``path``."""
    lock = FileLock(path, timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
