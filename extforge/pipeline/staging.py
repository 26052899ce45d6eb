"""Exclusive staging area for in-flight build files."""

from __future__ import annotations

import fcntl
import os
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Union

from extforge.core.logging_manager import get_logger
from extforge.utils.exceptions import PackagingError, StagingBusyError

logger = get_logger(__name__)

LOCK_FILE_NAME = '.lock'

_registry_lock = threading.Lock()
_thread_locks: Dict[str, threading.Lock] = {}


def _thread_lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _registry_lock:
        if key not in _thread_locks:
            _thread_locks[key] = threading.Lock()
        return _thread_locks[key]


class StagingArea:
    """A directory owned by at most one build at a time.

    Ownership is held through :meth:`session`, which takes an in-process
    lock for the directory plus an ``flock`` on a ``.lock`` file inside it,
    so builds in other threads and other processes are serialized too.
    Everything except the lock file is removed when the session ends.

    Attributes:
        path: Staging directory
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock_path = self.path / LOCK_FILE_NAME

    @contextmanager
    def session(self, blocking: bool = True) -> Iterator[Path]:
        """Own the staging area for the duration of the context.

        Args:
            blocking: Wait for another build to finish instead of failing

        Yields:
            The staging directory

        Raises:
            StagingBusyError: If ``blocking`` is False and another build owns it
        """
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PackagingError(f"Cannot create staging directory {self.path}: {e}", path=str(self.path)) from e

        thread_lock = _thread_lock_for(self.path)
        if not thread_lock.acquire(blocking=blocking):
            raise StagingBusyError(f"Another build is using {self.path}", path=str(self.path))

        try:
            with self._lock_path.open('a+', encoding='utf-8') as lock_handle:
                flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
                try:
                    fcntl.flock(lock_handle.fileno(), flags)
                except BlockingIOError as e:
                    raise StagingBusyError(
                        f"Another process is using {self.path}", path=str(self.path)
                    ) from e
                try:
                    yield self.path
                finally:
                    self.clear()
                    fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
        finally:
            thread_lock.release()

    def clear(self) -> None:
        """Remove every staged file, keeping the lock file."""
        for entry in self.contents():
            target = self.path / entry
            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error("Failed to remove staged file", path=str(target), error=str(e))

    def contents(self) -> List[str]:
        """Names of the staged entries, excluding the lock file."""
        if not self.path.is_dir():
            return []
        return sorted(name for name in os.listdir(self.path) if name != LOCK_FILE_NAME)

    @staticmethod
    def remove(path: Union[str, Path]) -> None:
        """Delete one staged file if it is still there."""
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove staged file", path=str(path), error=str(e))
