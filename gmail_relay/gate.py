"""Single-flight send gate with cooperative cancellation.

The gate allows at most one send operation to run at a time. A second caller
is rejected immediately instead of being queued, and an operator may flag the
running send for cancellation; the send only observes the flag at the
checkpoints it polls.

The service runs on a single asyncio event loop and :meth:`SendGate.try_acquire`
never awaits between the busy check and the busy set, so no lock is needed.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Dict, Iterator


class GateBusyError(RuntimeError):
    """Raised by :meth:`SendGate.held` when another send owns the gate."""

    def __init__(self, message: str = "A send is already in progress"):
        super().__init__(message)
        self.code = "already_in_progress"


class SendCounter:
    """In-memory tally of successful sends for the lifetime of the process."""

    def __init__(self, today: Callable[[], date] = date.today):
        self._today = today
        self.total = 0
        self._day = today()
        self._day_count = 0

    @property
    def today(self) -> int:
        """Number of sends recorded since local midnight."""
        if self._today() != self._day:
            return 0
        return self._day_count

    def increment(self) -> int:
        """Record one successful send and return the new total."""
        current_day = self._today()
        if current_day != self._day:
            self._day = current_day
            self._day_count = 0
        self._day_count += 1
        self.total += 1
        return self.total


class SendGate:
    """Process-wide state machine guarding the in-flight send."""

    def __init__(self, counter: SendCounter | None = None):
        self._busy = False
        self._cancel_requested = False
        self.counter = counter or SendCounter()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def cancel_requested(self) -> bool:
        """``True`` once an operator asked the running send to stop."""
        return self._cancel_requested

    def try_acquire(self) -> bool:
        """Take ownership of the gate; return ``False`` when it is held."""
        if self._busy:
            return False
        self._busy = True
        self._cancel_requested = False
        return True

    def request_cancel(self) -> bool:
        """Flag the running send for cancellation.

        Returns ``False`` and changes nothing when no send is in progress.
        """
        if not self._busy:
            return False
        self._cancel_requested = True
        return True

    def release(self) -> None:
        self._busy = False
        self._cancel_requested = False

    @contextmanager
    def held(self) -> Iterator["SendGate"]:
        """Hold the gate for the duration of the ``with`` block.

        Raises :class:`GateBusyError` without touching the state when the
        gate is already held; otherwise the gate is released on every exit
        path, exceptions included.
        """
        if not self.try_acquire():
            raise GateBusyError()
        try:
            yield self
        finally:
            self.release()

    def record_sent(self) -> int:
        """Increase the send counter and return the new total."""
        return self.counter.increment()

    @property
    def total_sent(self) -> int:
        return self.counter.total

    def status(self) -> Dict[str, Any]:
        """Return a snapshot of the gate for status reporting."""
        return {
            "busy": self._busy,
            "cancel_requested": self._cancel_requested,
            "total_sent": self.counter.total,
        }
