"""
In-process notification channels.

Components publish progress and state changes on named channels; the
presentation layer (or the CLI) subscribes. Delivery is synchronous on the
publishing thread. Within one channel, events reach every subscriber in the
order they were published; a subscriber that raises is logged and skipped.
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Subscriber = Callable[[Any], None]


class Channel(str, Enum):
    DOWNLOAD_PROGRESS = "download-progress"      # int percent, -1 on failure
    INSTALL_DIR_CHANGED = "install-dir-changed"  # new path
    VERSIONS_UPDATED = "versions-updated"        # None
    BACKEND_OUTPUT = "backend-output"            # raw text line


class NotificationBus:
    """
    Fire-and-forget publish/subscribe keyed by Channel.

    Example:
        >>> bus = NotificationBus()
        >>> bus.subscribe(Channel.BACKEND_OUTPUT, print)
        >>> bus.publish(Channel.BACKEND_OUTPUT, "Loading model...")
        Loading model...
    """

    def __init__(self):
        self._subscribers: Dict[Channel, List[Subscriber]] = {channel: [] for channel in Channel}
        self._channel_locks: Dict[Channel, threading.RLock] = {channel: threading.RLock() for channel in Channel}
        self._registry_lock = threading.Lock()

    def subscribe(self, channel: Channel, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for a channel.

        Returns:
            A function that removes the subscription
        """
        with self._registry_lock:
            self._subscribers[channel].append(callback)
        return lambda: self.unsubscribe(channel, callback)

    def unsubscribe(self, channel: Channel, callback: Subscriber) -> None:
        with self._registry_lock:
            if callback in self._subscribers[channel]:
                self._subscribers[channel].remove(callback)

    def publish(self, channel: Channel, payload: Any = None) -> None:
        with self._registry_lock:
            subscribers = list(self._subscribers[channel])
        # Serializing per channel keeps FIFO order across publishing threads
        with self._channel_locks[channel]:
            for callback in subscribers:
                try:
                    callback(payload)
                except Exception:
                    logger.exception(f"Subscriber {callback!r} failed on {channel.value}")
