import fcntl
from contextlib import contextmanager
from pathlib import Path

from cellar.errors import InstallIOError
from cellar.utils.logger import log


@contextmanager
def package_lock(lock_dir: Path, name: str):
    """
    Hold an exclusive lock for one package name.

    Serializes install and uninstall for that name across threads and
    processes. Blocks until the lock is free; released on every exit path.
    """
    lock_path = Path(lock_dir) / f"{name}.lock"
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(lock_path, "a+")
    except OSError as e:
        raise InstallIOError(f"Cannot open lock file {lock_path}: {e}") from e

    with lock_file:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        log.debug(f"Acquired lock for {name}")
        try:
            yield lock_path
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            log.debug(f"Released lock for {name}")
