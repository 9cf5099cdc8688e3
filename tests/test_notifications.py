"""Tests for the notification bus and the termination race primitives."""

import threading
import time

from koboldkit.events import CancellableTimer, OneShot, first_completed
from koboldkit.notifications import Channel, NotificationBus


# ============================================================================
# TestNotificationBus
# ============================================================================

class TestNotificationBus:

    def test_fifo_within_channel(self):
        bus = NotificationBus()
        received = []
        bus.subscribe(Channel.BACKEND_OUTPUT, received.append)
        for i in range(100):
            bus.publish(Channel.BACKEND_OUTPUT, f"line {i}")
        assert received == [f"line {i}" for i in range(100)]

    def test_channels_are_independent(self):
        bus = NotificationBus()
        output, progress = [], []
        bus.subscribe(Channel.BACKEND_OUTPUT, output.append)
        bus.subscribe(Channel.DOWNLOAD_PROGRESS, progress.append)
        bus.publish(Channel.DOWNLOAD_PROGRESS, 50)
        assert output == []
        assert progress == [50]

    def test_failing_subscriber_does_not_block_others(self, caplog):
        bus = NotificationBus()
        received = []

        def broken(payload):
            raise RuntimeError("subscriber bug")

        bus.subscribe(Channel.VERSIONS_UPDATED, broken)
        bus.subscribe(Channel.VERSIONS_UPDATED, received.append)
        bus.publish(Channel.VERSIONS_UPDATED)
        assert received == [None]
        assert "subscriber bug" in caplog.text

    def test_unsubscribe(self):
        bus = NotificationBus()
        received = []
        unsubscribe = bus.subscribe(Channel.INSTALL_DIR_CHANGED, received.append)
        bus.publish(Channel.INSTALL_DIR_CHANGED, "/a")
        unsubscribe()
        bus.publish(Channel.INSTALL_DIR_CHANGED, "/b")
        assert received == ["/a"]

    def test_fifo_per_publisher_thread(self):
        bus = NotificationBus()
        received = []
        bus.subscribe(Channel.BACKEND_OUTPUT, received.append)

        def publish(prefix):
            for i in range(50):
                bus.publish(Channel.BACKEND_OUTPUT, (prefix, i))

        threads = [threading.Thread(target=publish, args=(p,)) for p in "ab"]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        for prefix in "ab":
            assert [i for p, i in received if p == prefix] == list(range(50))


# ============================================================================
# TestRace
# ============================================================================

class TestRace:

    def test_one_shot_fires_once(self):
        event = OneShot("exit")
        assert event.fire() is True
        assert event.fire() is False
        assert event.is_set()

    def test_event_beats_timer_and_cancels_it(self):
        exited = OneShot("exit")
        timer = CancellableTimer(5.0).start()
        threading.Timer(0.05, exited.fire).start()

        start = time.monotonic()
        winner = first_completed(exited, timer)
        assert winner is exited
        assert time.monotonic() - start < 2.0
        time.sleep(0.05)
        assert timer.cancelled
        assert not timer.is_set()

    def test_timer_wins(self):
        exited = OneShot("exit")
        timer = CancellableTimer(0.05).start()
        assert first_completed(exited, timer) is timer
        assert not exited.is_set()

    def test_already_fired_event_wins_immediately(self):
        exited = OneShot("exit")
        exited.fire()
        timer = CancellableTimer(5.0).start()
        assert first_completed(exited, timer) is exited

    def test_overall_timeout(self):
        assert first_completed(OneShot("a"), OneShot("b"), timeout=0.05) is None
