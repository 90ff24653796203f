"""
Run lock for the backup root.

Only one coordinator may write into a backup root at a time. The lock is a
file created with ``O_EXCL`` holding the owner's PID; a lock left behind by
a process that no longer exists is reclaimed.
"""

import errno
import logging
import os
from pathlib import Path

from stackvault.exceptions import ConfigurationInvalid, LockHeld


logger = logging.getLogger(__name__)

LOCK_FILENAME = '.stackvault.lock'


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    return True


class RunLock:
    """
    Exclusive lock file, usable as a context manager.

    Example::

        with RunLock(settings.backup_root):
            ...
    """

    def __init__(self, root: Path):
        self.path = Path(root) / LOCK_FILENAME
        self.acquired = False

    def _read_owner(self):
        try:
            return int(self.path.read_text().strip() or 0)
        except FileNotFoundError:
            return None
        except ValueError:
            return 0

    def acquire(self):
        """
        Take the lock.

        Raises:
            LockHeld: If a live process owns the lock
            ConfigurationInvalid: If the lock file cannot be created
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationInvalid(f"Cannot create backup directory {self.path.parent}: {e}")

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except OSError as e:
                if e.errno != errno.EEXIST:
                    raise ConfigurationInvalid(f"Cannot create lock file {self.path}: {e}")

                owner = self._read_owner()
                if owner is not None and _pid_alive(owner):
                    raise LockHeld(f"Another backup run (pid {owner}) holds {self.path}")
                logger.warning(f"Reclaiming stale lock {self.path} (pid {owner})")
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue

            with os.fdopen(fd, 'w') as f:
                f.write(str(os.getpid()))
            self.acquired = True
            return self

        raise LockHeld(f"Could not acquire {self.path}")

    def release(self):
        if not self.acquired:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self.acquired = False

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
