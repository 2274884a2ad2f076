"""Cancellation token shared by every suspending call of a session."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CancelToken:
    def __init__(self, reason: str = "") -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None
        self.reason = reason

    @classmethod
    def with_deadline(cls, deadline_ms: int, reason: str = "deadline") -> "CancelToken":
        """Token that cancels itself once ``deadline_ms`` has elapsed."""
        token = cls()
        timer = threading.Timer(max(deadline_ms, 0) / 1000.0, token.cancel, args=(reason,))
        timer.daemon = True
        token._timer = timer
        timer.start()
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason or self.reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        if self._timer is not None:
            self._timer.cancel()
        for callback in callbacks:
            self._run_callback(callback)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or ``timeout`` seconds pass. True if cancelled."""
        return self._event.wait(timeout)

    def dispose(self) -> None:
        """Stop the deadline timer without cancelling."""
        if self._timer is not None:
            self._timer.cancel()

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("cancel callback failed")


@dataclass
class CallOutcome:
    finished: bool = False
    value: Any = None
    error: Optional[BaseException] = None


def run_cancellable(
    fn: Callable[[], Any],
    token: CancelToken,
    timeout_s: Optional[float] = None,
    name: str = "cancellable-call",
) -> CallOutcome:
    """Run ``fn`` on a daemon thread and wait for it, the token, or the timeout.

    The helper thread is abandoned, not killed, when the wait gives up; its
    late result lands in an outcome object nobody reads anymore.
    """
    outcome = CallOutcome()
    wake = threading.Event()

    def _target() -> None:
        try:
            outcome.value = fn()
        except BaseException as exc:  # noqa: BLE001 - re-raised by the caller
            outcome.error = exc
        finally:
            outcome.finished = True
            wake.set()

    threading.Thread(target=_target, daemon=True, name=name).start()
    token.add_callback(wake.set)
    try:
        wake.wait(timeout_s)
    finally:
        token.remove_callback(wake.set)
    if not outcome.finished:
        return CallOutcome()
    return outcome
