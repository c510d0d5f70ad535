"""
Tests for cross-process file locking.
"""

import os
import subprocess
import sys
import time

import pytest

from visual_delivery.errors import LockTimeout
from visual_delivery.locking import FileLock, file_lock, lock_path_for, pid_alive, release_lock


def _dead_pid() -> int:
    """Pid of a process that has already exited."""
    proc = subprocess.Popen([sys.executable, '-c', 'pass'])
    proc.wait()
    return proc.pid


class TestFileLock:
    """Acquire and release."""

    def test_acquire_writes_owner_pid(self, temp_data_dir):
        """Test the lock file holds our pid while held."""
        target = temp_data_dir / 'index.json'
        lock = FileLock(target)
        lock_path = lock.acquire()
        try:
            assert lock_path == lock_path_for(target)
            assert lock_path.read_text() == str(os.getpid())
            assert lock.held
        finally:
            lock.release()
        assert not lock_path.exists()
        assert not lock.held

    def test_context_manager_releases_on_error(self, temp_data_dir):
        """Test the lock is released when the body raises."""
        target = temp_data_dir / 'feedback.json'
        with pytest.raises(RuntimeError):
            with file_lock(target):
                raise RuntimeError('boom')
        assert not lock_path_for(target).exists()

    def test_release_is_idempotent(self, temp_data_dir):
        """Test releasing twice does not raise."""
        lock = FileLock(temp_data_dir / 'a.json')
        lock.acquire()
        lock.release()
        lock.release()
        release_lock(lock.lock_path)

    def test_creates_parent_directory(self, temp_data_dir):
        """Test locking a path whose directory does not exist yet."""
        target = temp_data_dir / 'deliveries' / 'd_1_001' / 'delivery.json'
        with file_lock(target):
            assert lock_path_for(target).exists()


class TestContention:
    """Held, stale and timed-out locks."""

    def test_stale_lock_is_reclaimed(self, temp_data_dir):
        """Test a lock left by a dead process is taken over immediately."""
        target = temp_data_dir / 'index.json'
        lock_path_for(target).write_text(str(_dead_pid()))

        start = time.monotonic()
        with FileLock(target, timeout=2.0):
            assert lock_path_for(target).read_text() == str(os.getpid())
        assert time.monotonic() - start < 1.0

    def test_live_lock_times_out(self, temp_data_dir):
        """Test a lock held by a live process is not stolen before the timeout."""
        target = temp_data_dir / 'index.json'
        lock_path_for(target).write_text(str(os.getpid()))

        start = time.monotonic()
        with pytest.raises(LockTimeout):
            FileLock(target, timeout=0.3).acquire()
        assert time.monotonic() - start >= 0.3
        # The holder's lock file is untouched
        assert lock_path_for(target).read_text() == str(os.getpid())

    def test_lock_without_pid_is_not_reclaimed(self, temp_data_dir):
        """Test a lock file whose owner has not written its pid yet is waited on."""
        target = temp_data_dir / 'index.json'
        lock_path_for(target).write_text('')

        with pytest.raises(LockTimeout):
            FileLock(target, timeout=0.2).acquire()
        assert lock_path_for(target).exists()

    def test_old_lock_without_pid_is_reclaimed(self, temp_data_dir):
        """Test a pid-less lock left behind long ago is treated as stale."""
        target = temp_data_dir / 'index.json'
        lock_path = lock_path_for(target)
        lock_path.write_text('')
        an_hour_ago = time.time() - 3600
        os.utime(lock_path, (an_hour_ago, an_hour_ago))

        with FileLock(target, timeout=0.3):
            assert lock_path.read_text() == str(os.getpid())
        with FileLock(target, timeout=0.3):
            pass
        assert not lock_path.exists()

    def test_reclaim_keeps_lock_replaced_by_another_contender(self, temp_data_dir):
        """Test reclaiming a stale lock never removes a fresh one taken in the meantime."""
        target = temp_data_dir / 'index.json'
        lock_path = lock_path_for(target)
        lock_path.write_text(str(_dead_pid()))
        stale = lock_path.stat()
        stale_owner = int(lock_path.read_text())

        # Another contender reclaims first and now holds a live lock
        lock_path.unlink()
        lock_path.write_text(str(os.getpid()))

        FileLock(target)._reclaim(stale_owner, stale)
        assert lock_path.read_text() == str(os.getpid())
        assert [p.name for p in temp_data_dir.iterdir()] == [lock_path.name]

    def test_reclaim_removes_inspected_stale_lock(self, temp_data_dir):
        target = temp_data_dir / 'index.json'
        lock_path = lock_path_for(target)
        lock_path.write_text(str(_dead_pid()))

        FileLock(target)._reclaim(int(lock_path.read_text()), lock_path.stat())
        assert list(temp_data_dir.iterdir()) == []

    def test_lock_is_not_reentrant(self, temp_data_dir):
        """Test acquiring the same path twice waits on itself."""
        target = temp_data_dir / 'index.json'
        with FileLock(target):
            with pytest.raises(LockTimeout):
                FileLock(target, timeout=0.2).acquire()

    def test_lock_timeout_error_code(self, temp_data_dir):
        """Test LockTimeout renders as LOCK_TIMEOUT / 500."""
        target = temp_data_dir / 'index.json'
        lock_path_for(target).write_text(str(os.getpid()))
        with pytest.raises(LockTimeout) as exc_info:
            FileLock(target, timeout=0.1).acquire()
        assert exc_info.value.code == 'LOCK_TIMEOUT'
        assert exc_info.value.http_status == 500


class TestPidAlive:
    def test_own_pid_is_alive(self):
        assert pid_alive(os.getpid())

    def test_exited_pid_is_dead(self):
        assert not pid_alive(_dead_pid())

    def test_non_positive_pid_is_dead(self):
        assert not pid_alive(0)
        assert not pid_alive(-5)
