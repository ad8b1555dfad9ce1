"""
Locks for the ingestion worker.

Two levels:

- single_flight_lock(key): process-wide non-reentrant lock per key. The
  scheduler holds it for the entire duration of a run, so a tick arriving
  while a run is in flight can be dropped instead of queued.

- acquire_lock(name) / release_lock(name): PID-file singleton so only one
  worker process runs per host. Stale lock files (dead PID) are reclaimed.

Usage in the daemon:
    if not acquire_lock('price_ingest', lock_dir):
        sys.exit(0)  # Another instance running
    try:
        # worker
    finally:
        release_lock('price_ingest', lock_dir)
"""

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Union

logger = logging.getLogger(__name__)

DEFAULT_LOCK_DIR = Path(".locks")

_flight_locks: Dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


# =============================================================================
# IN-PROCESS SINGLE FLIGHT
# =============================================================================

def single_flight_lock(key: str) -> threading.Lock:
    """Return the lock for `key`, creating it on first use."""
    with _registry_lock:
        lock = _flight_locks.get(key)
        if lock is None:
            lock = _flight_locks[key] = threading.Lock()
        return lock


@contextmanager
def single_flight(key: str) -> Iterator[bool]:
    """
    Try to take the lock for `key` without blocking.

    Yields True when acquired. The lock is released on every exit path.
    """
    lock = single_flight_lock(key)
    acquired = lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()


# =============================================================================
# PROCESS SINGLETON (PID FILE)
# =============================================================================

def _lock_path(name: str, lock_dir: Union[str, Path]) -> Path:
    return Path(lock_dir) / f"{name}.pid"


def _is_process_alive(pid: int) -> bool:
    """Check if a process with given PID is still running."""
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def acquire_lock(name: str, lock_dir: Union[str, Path] = DEFAULT_LOCK_DIR) -> bool:
    """
    Acquire a PID-based singleton lock.
    Returns True if lock acquired, False if another instance is running.
    """
    Path(lock_dir).mkdir(parents=True, exist_ok=True)
    path = _lock_path(name, lock_dir)

    if path.exists():
        try:
            old_pid = int(path.read_text().strip())
            if old_pid != os.getpid() and _is_process_alive(old_pid):
                logger.warning(f"SINGLETON BLOCK: {name} already running (PID={old_pid}). Exiting.")
                return False
            logger.info(f"Stale lock for {name} (PID={old_pid} dead). Reclaiming.")
        except (ValueError, OSError):
            pass
        path.unlink(missing_ok=True)

    path.write_text(str(os.getpid()))
    logger.info(f"Lock acquired: {name} (PID={os.getpid()})")
    return True


def release_lock(name: str, lock_dir: Union[str, Path] = DEFAULT_LOCK_DIR) -> None:
    """Release the PID lock file if this process owns it."""
    path = _lock_path(name, lock_dir)
    try:
        if not path.exists():
            return
        stored_pid = int(path.read_text().strip())
        if stored_pid == os.getpid():
            path.unlink()
            logger.info(f"Lock released: {name}")
        else:
            logger.warning(f"Lock owned by PID={stored_pid}, not releasing (we are {os.getpid()})")
    except (ValueError, OSError) as e:
        logger.warning(f"Lock release error for {name}: {e}")
