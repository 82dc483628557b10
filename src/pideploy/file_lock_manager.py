"""Cross-platform file locking for debug sessions shared between processes.

Two `pideploy run --debug` invocations against the same debug port must not
both decide to start a debugger. The session registry takes an exclusive
lock file per session name for the duration of that decision.

Philosophy:
- Standard library only (fcntl/msvcrt are standard library)
- Cross-platform support (Unix/Windows)
- Exponential backoff for contention handling
- Context manager for automatic cleanup

Public API:
    acquire_file_lock: Context manager for acquiring exclusive file lock
    LockTimeoutError: Exception raised when lock cannot be acquired within timeout

Example:
    >>> from pathlib import Path
    >>> from pideploy.file_lock_manager import acquire_file_lock
    >>> lock_file = Path("~/.pideploy/locks/pi-debugger-5005.lock").expanduser()
    >>> with acquire_file_lock(lock_file, timeout=5.0, operation="debug session"):
    ...     pass  # Only this process decides about the session
"""

import logging
import platform
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

_system = platform.system()
if TYPE_CHECKING or _system == "Windows":
    import msvcrt  # type: ignore[import-not-found]
if TYPE_CHECKING or _system != "Windows":
    import fcntl  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

__all__ = ["LockTimeoutError", "acquire_file_lock"]


class LockTimeoutError(Exception):
    """Raised when file lock cannot be acquired within timeout period."""


@contextmanager
def acquire_file_lock(
    file_path: Path,
    timeout: float = 5.0,
    operation: str = "file operation",
) -> Generator[None, None, None]:
    """Acquire exclusive file lock with exponential backoff.

    The lock file is created if it does not exist.

    Args:
        file_path: Path to file to lock
        timeout: Maximum seconds to wait for lock acquisition (default: 5.0)
        operation: Description of operation (used in error messages)

    Yields:
        None (lock is held within context)

    Raises:
        PermissionError: If lacking permissions to lock file
        LockTimeoutError: If lock cannot be acquired within timeout
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)

    # Mode 'a' creates the file; nothing is ever written through this handle
    with open(file_path, "a") as file_handle:
        _acquire_lock_with_backoff(file_handle, file_path, timeout, operation)
        try:
            yield
        finally:
            _release_lock(file_handle)


def _acquire_lock_with_backoff(
    file_handle: TextIO,
    file_path: Path,
    timeout: float,
    operation: str,
) -> None:
    """Acquire file lock, retrying 0.1s -> 0.2s -> 0.4s ... (capped at 2s).

    Raises:
        LockTimeoutError: If lock cannot be acquired within timeout
        PermissionError: If lacking permissions to lock file
    """
    start_time = time.time()
    delay = 0.1
    attempt = 0

    while True:
        try:
            if _system == "Windows":
                msvcrt.locking(file_handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
            else:
                fcntl.flock(file_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            if attempt:
                logger.debug(f"Acquired lock for {operation} after {attempt} retries")
            return

        except (BlockingIOError, PermissionError) as e:
            # A first PermissionError on Unix is a genuine permission issue
            if isinstance(e, PermissionError) and attempt == 0 and _system != "Windows":
                raise

            elapsed = time.time() - start_time
            if elapsed >= timeout:
                raise LockTimeoutError(
                    f"Failed to acquire file lock for {operation} after {timeout} seconds. "
                    f"File: {file_path}. Another process may be holding the lock."
                ) from e

            if attempt == 0:
                logger.info(f"Waiting for another pideploy process ({operation})...")

            time.sleep(min(delay, timeout - elapsed))
            delay = min(delay * 2, 2.0)
            attempt += 1


def _release_lock(file_handle: TextIO) -> None:
    """Release file lock (platform-specific)."""
    try:
        if _system == "Windows":
            msvcrt.locking(file_handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        else:
            fcntl.flock(file_handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        # File may already be closed
        logger.debug(f"Error during lock cleanup: {e}")
