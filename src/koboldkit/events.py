"""
Race primitives for process termination.

Stopping the backend waits for whichever comes first: the child's own exit
or a deadline. Both sides are modelled explicitly so the losing timer is
always cancelled and never fires after the race has been decided.
"""

import threading
from typing import Optional


class OneShot:
    """
    An event that fires at most once and remembers who fired it.

    Waiters registered through `first_completed` are woken when it fires.
    """

    def __init__(self, name: str):
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners = []

    def fire(self) -> bool:
        """Fire the event. Returns False if it had already fired."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            listeners = list(self._listeners)
            self._listeners.clear()
        for listener in listeners:
            listener(self)
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def _add_listener(self, listener) -> None:
        with self._lock:
            if not self._event.is_set():
                self._listeners.append(listener)
                return
        listener(self)

    def _remove_listener(self, listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)


class CancellableTimer(OneShot):
    """A OneShot fired by a background timer unless cancelled first."""

    def __init__(self, seconds: float, name: str = "timeout"):
        super().__init__(name)
        self.seconds = seconds
        self._timer = threading.Timer(seconds, self.fire)
        self._timer.daemon = True

    def start(self) -> "CancellableTimer":
        self._timer.start()
        return self

    def cancel(self) -> None:
        self._timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._timer.finished.is_set() and not self.is_set()


def first_completed(*events: OneShot, timeout: Optional[float] = None) -> Optional[OneShot]:
    """
    Block until the first of `events` fires and return it.

    Any CancellableTimer among the losers is cancelled before returning.
    Returns None only if `timeout` elapses with nothing fired.

    Example:
        >>> exited = OneShot("exit")
        >>> deadline = CancellableTimer(3.0).start()
        >>> winner = first_completed(exited, deadline)
    """
    decided = threading.Event()
    winner = []
    winner_lock = threading.Lock()

    def on_fire(event: OneShot) -> None:
        with winner_lock:
            if not winner:
                winner.append(event)
        decided.set()

    for event in events:
        event._add_listener(on_fire)
    try:
        decided.wait(timeout)
    finally:
        for event in events:
            event._remove_listener(on_fire)

    result = winner[0] if winner else None
    for event in events:
        if isinstance(event, CancellableTimer) and event is not result:
            event.cancel()
    return result
