from __future__ import annotations

import os
import signal

import pytest

from planloop.cancellation import CancellationToken, cancel_on_signals
from planloop.errors import ExecutionCancelledError


def test_token_raises_once_cancelled() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel("user request")
    token.cancel("ignored")

    assert token.cancelled
    assert token.reason == "user request"
    with pytest.raises(ExecutionCancelledError, match="user request"):
        token.raise_if_cancelled()


def test_signal_sets_token_and_restores_handler() -> None:
    previous = signal.getsignal(signal.SIGUSR1)
    token = CancellationToken()

    with cancel_on_signals(token, signals=(signal.SIGUSR1,)):
        os.kill(os.getpid(), signal.SIGUSR1)
        assert token.cancelled
        assert token.reason == "SIGUSR1"
        with pytest.raises(KeyboardInterrupt):
            os.kill(os.getpid(), signal.SIGUSR1)

    assert signal.getsignal(signal.SIGUSR1) == previous
