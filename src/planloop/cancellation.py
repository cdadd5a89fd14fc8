"""Cooperative cancellation checked at scheduler iteration boundaries."""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .errors import ExecutionCancelledError

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Flag shared between a signal handler (or caller) and the scheduler loop."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelledError(f"Execution cancelled: {self.reason}")


@contextmanager
def cancel_on_signals(
    token: CancellationToken,
    signals: tuple[int, ...] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[CancellationToken]:
    """Route ``signals`` to ``token`` for the duration of the block.

    A second signal while already cancelled restores the previous handler
    behaviour by raising :class:`KeyboardInterrupt`.
    """

    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    previous = {}

    def _handler(signum: int, _frame: object) -> None:
        name = signal.Signals(signum).name
        if token.cancelled:
            raise KeyboardInterrupt(name)
        LOGGER.warning("Received %s; stopping after the current iteration", name)
        token.cancel(name)

    for signum in signals:
        previous[signum] = signal.signal(signum, _handler)
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


__all__ = ["CancellationToken", "cancel_on_signals"]
