"""Notification cache and duplicate-message guard tests."""

import threading

import pytest

from diaspora_fed.idempotency import CACHE_QUARTER_HOUR, MessageGuard, NamedLocks, NotificationCache
from diaspora_fed.storage import MemoryCache, MemoryStore


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_once_expires_after_quarter_hour():
    clock = Clock()
    notifications = NotificationCache(MemoryCache(clock))
    assert notifications.once("sendParticipation", "g1")
    assert not notifications.once("sendParticipation", "g1")
    assert notifications.once("sendParticipation", "g2")

    clock.now += CACHE_QUARTER_HOUR + 1
    assert notifications.once("sendParticipation", "g1")


def test_memoize():
    clock = Clock()
    notifications = NotificationCache(MemoryCache(clock))
    calls = []

    def build():
        calls.append(1)
        return {"text": f"build {len(calls)}"}

    assert notifications.memoize("constructComment", "c1", build) == {"text": "build 1"}
    assert notifications.memoize("constructComment", "c1", build) == {"text": "build 1"}
    clock.now += CACHE_QUARTER_HOUR
    assert notifications.memoize("constructComment", "c1", build) == {"text": "build 2"}
    assert notifications.memoize("constructComment", "c2", lambda: None) is None
    assert notifications.key("constructComment", "c1") == "diaspora:constructComment:c1"


def test_insert_once():
    store = MemoryStore()
    guard = MessageGuard(store)
    first = guard.insert_once(2, "m1", {"text": "hi"})
    assert first is not None
    assert guard.insert_once(2, "m1", {"text": "hi again"}) is None
    assert guard.insert_once(3, "m1", {"text": "other user"}) is not None
    assert store.mail[first] == {"text": "hi", "uid": 2, "guid": "m1"}


def test_insert_once_concurrently():
    store = MemoryStore()
    guard = MessageGuard(store)
    results = []
    barrier = threading.Barrier(8)

    def deliver():
        barrier.wait()
        results.append(guard.insert_once(2, "m1", {"text": "hi"}))

    threads = [threading.Thread(target=deliver) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(store.mail) == 1
    assert sum(result is not None for result in results) == 1


def test_lock_released_on_error():
    class Failing(MemoryStore):
        def insert_mail(self, fields):
            raise RuntimeError("database down")

    locks = NamedLocks()
    guard = MessageGuard(Failing(), locks)
    with pytest.raises(RuntimeError):
        guard.insert_once(2, "m1", {})

    # The named lock is free again
    with locks.hold("mail"):
        pass
