"""Cross-process formula locks acquired in a global order."""

from __future__ import annotations

import fcntl
import time
from pathlib import Path
from typing import IO, Iterable

from brewhouse.core.errors import SystemError
from brewhouse.core.logging import get_logger

log = get_logger(__name__)


class FormulaLock:
    """Exclusive advisory lock on `<lock_dir>/<name>.formula.lock`."""

    def __init__(self, name: str, lock_dir: Path) -> None:
        self.name = name
        self.path = lock_dir / f"{name}.formula.lock"
        self._fh: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> None:
        """Block until the lock is held by this object."""
        if self._fh is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = self.path.open("a+", encoding="utf-8")
        start = time.perf_counter()
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        except OSError as e:
            fh.close()
            raise SystemError(
                f"Could not lock {self.name}",
                context={"path": str(self.path), "error": str(e)},
            ) from e
        self._fh = fh
        waited_ms = int((time.perf_counter() - start) * 1000)
        log.debug("formula_locked", formula=self.name, waited_ms=waited_ms)

    def release(self) -> None:
        if self._fh is None:
            return
        try:
            fcntl.flock(self._fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._fh.close()
            self._fh = None
        log.debug("formula_unlocked", formula=self.name)


class LockCoordinator:
    """Holds the locks of one top-level install.

    All names are locked in lexical order before any installation step,
    so two runs with overlapping closures cannot wait on each other in
    opposite order. Recursive sub-installs share the coordinator and see
    the locks as already held.
    """

    def __init__(self, lock_dir: Path) -> None:
        self.lock_dir = lock_dir
        self._locks: list[FormulaLock] = []
        self.acquired_order: list[str] = []

    @property
    def active(self) -> bool:
        return bool(self._locks)

    @property
    def locked(self) -> list[str]:
        return [lock.name for lock in self._locks]

    def holds(self, name: str) -> bool:
        return any(lock.name == name for lock in self._locks)

    def acquire(self, root: str, names: Iterable[str]) -> bool:
        """Lock `root` and `names` unless this run already holds locks.

        Returns:
            True when this call acquired the locks and must release them.
        """
        if self._locks:
            return False

        ordered = sorted({root, *names})
        acquired: list[FormulaLock] = []
        try:
            for name in ordered:
                lock = FormulaLock(name, self.lock_dir)
                lock.acquire()
                acquired.append(lock)
        except BaseException:
            for lock in reversed(acquired):
                lock.release()
            raise

        self._locks = acquired
        self.acquired_order = ordered
        log.info("locks_acquired", root=root, order=ordered)
        return True

    def release(self) -> None:
        """Release every held lock; later calls are no-ops."""
        if not self._locks:
            return
        locks, self._locks = self._locks, []
        for lock in reversed(locks):
            lock.release()
        log.info("locks_released", names=[lock.name for lock in locks])
