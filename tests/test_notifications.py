"""
Test Notification Channel - Exactly-once drain and history

Run with: pytest tests/test_notifications.py
"""

import threading

from blueprint_coach.commands import LEVEL_INFO, LEVEL_WARNING, Notify
from blueprint_coach.utils.notifications import NotificationChannel


def notice(n, level=LEVEL_INFO):
    return Notify(level=level, code="test", message=f"notice {n}")


def test_drain_returns_unread_once():
    channel = NotificationChannel()
    channel.emit(notice(1, LEVEL_WARNING))
    channel.emit(notice(2))

    assert [n.message for n in channel.drain()] == ["notice 1", "notice 2"]
    assert channel.drain() == []

    channel.emit(notice(3))
    assert [n.message for n in channel.drain()] == ["notice 3"]
    # History is kept for diagnostics, read or not
    assert [n.message for n in channel.recent()] == ["notice 1", "notice 2", "notice 3"]


def test_history_is_bounded():
    channel = NotificationChannel(history_size=2)
    for n in range(5):
        channel.emit(notice(n))

    assert [n.message for n in channel.recent()] == ["notice 3", "notice 4"]
    assert len(channel.drain()) == 5


def test_drain_while_another_thread_emits_loses_nothing():
    channel = NotificationChannel(max_unread=10_000)
    total = 2000
    drained = []

    def producer():
        for n in range(total):
            channel.emit(notice(n))

    thread = threading.Thread(target=producer)
    thread.start()
    while thread.is_alive():
        drained.extend(channel.drain())
    thread.join()
    drained.extend(channel.drain())

    assert [n.message for n in drained] == [f"notice {n}" for n in range(total)]
    print("✓ Concurrent drain test passed")
