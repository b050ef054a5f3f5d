"""Deferral of keyboard interrupts across cleanup regions."""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from typing import Iterator

from brewhouse.core.logging import get_logger

log = get_logger(__name__)


@contextmanager
def ignore_interrupts() -> Iterator[None]:
    """Run the enclosed block with SIGINT deferred.

    An interrupt received inside the block is held until the block
    completes and then re-delivered as KeyboardInterrupt. Signal handlers
    can only be installed from the main thread; elsewhere the block runs
    unprotected.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    received: list[int] = []

    def _defer(signum, frame):
        received.append(signum)
        log.warning("interrupt_deferred", signal=signum)

    previous = signal.signal(signal.SIGINT, _defer)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)

    if received:
        raise KeyboardInterrupt
