"""
Unit tests for the Singleton lock controller.

Persisters are scripted so each branch of the acquire/release protocol can be
driven directly.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from singleton_process import (
    ConfigurationError,
    LockEvent,
    MemoryPersister,
    PersisterError,
    PersistResult,
    Singleton,
)


def now():
    return datetime.now(timezone.utc)


class ScriptedPersister:
    """Persister that replays queued results (or raises queued exceptions)."""

    def __init__(self, persist=None, delete=None, exists=None):
        self.persist_results = list(persist or [])
        self.delete_results = list(delete or [])
        self.exists_results = list(exists or [])
        self.calls = []

    @staticmethod
    def _next(queue, default):
        value = queue.pop(0) if queue else default
        if isinstance(value, BaseException):
            raise value
        return value

    async def persist_lock(self, name):
        self.calls.append(("persist_lock", name))
        return self._next(self.persist_results, PersistResult(created=True))

    async def delete_lock(self, name):
        self.calls.append(("delete_lock", name))
        return self._next(self.delete_results, None)

    async def lock_exists(self, name):
        self.calls.append(("lock_exists", name))
        return self._next(self.exists_results, False)


def record_events(singleton):
    events = []
    for event in LockEvent:
        singleton.subscribe(event, lambda n: events.append(n.event.value))
    return events


class TestConstructor:

    def test_requires_name(self):
        with pytest.raises(ConfigurationError, match="'name'"):
            Singleton(None, ScriptedPersister())

    def test_requires_persister(self):
        with pytest.raises(ConfigurationError, match="'persister'"):
            Singleton("foo", None)

    def test_options_from_dict(self):
        singleton = Singleton("foo", ScriptedPersister(), {"lock_expire_seconds": 300})
        assert singleton.options.lock_expire_seconds == 300
        assert singleton.is_signaled_for_shutdown is False

    def test_rejects_negative_expiry(self):
        with pytest.raises(ConfigurationError):
            Singleton("foo", ScriptedPersister(), {"lock_expire_seconds": -1})

    def test_unknown_event(self):
        singleton = Singleton("foo", ScriptedPersister())
        with pytest.raises(ConfigurationError, match="Unknown lock event"):
            singleton.subscribe("exploded", lambda n: None)


class TestAcquireWhenNoLockExists:

    @pytest.mark.asyncio
    async def test_fires_locking_and_locked(self):
        singleton = Singleton("foo", ScriptedPersister())
        events = record_events(singleton)

        assert await singleton.acquire() is True
        assert events == ["locking", "locked"]

    @pytest.mark.asyncio
    async def test_invokes_callback_with_true(self):
        singleton = Singleton("foo", ScriptedPersister())
        received = []

        await singleton.acquire(lambda err, success: received.append((err, success)))
        await asyncio.sleep(0)

        assert received == [(None, True)]


class TestAcquireWhenLiveLockExists:

    @pytest.mark.asyncio
    async def test_fires_locking_and_conflict(self):
        persister = ScriptedPersister(persist=[PersistResult(created=False, conflict_created=now())])
        singleton = Singleton("foo", persister)
        events = record_events(singleton)

        assert await singleton.acquire() is False
        assert events == ["locking", "conflict"]
        assert ("delete_lock", "foo") not in persister.calls

    @pytest.mark.asyncio
    async def test_without_expiry_old_lock_is_permanent(self):
        old = now() - timedelta(days=30)
        persister = ScriptedPersister(persist=[PersistResult(created=False, conflict_created=old)])
        singleton = Singleton("foo", persister)
        events = record_events(singleton)

        assert await singleton.acquire() is False
        assert events == ["locking", "conflict"]

    @pytest.mark.asyncio
    async def test_future_lock_is_not_expired(self):
        future = now() + timedelta(seconds=3600)
        persister = ScriptedPersister(persist=[PersistResult(created=False, conflict_created=future)])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        events = record_events(singleton)

        assert await singleton.acquire() is False
        assert events == ["locking", "conflict"]

    @pytest.mark.asyncio
    async def test_conflict_message_names_lock(self):
        persister = ScriptedPersister(persist=[PersistResult(created=False, conflict_created=now())])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        messages = []
        singleton.subscribe("conflict", lambda n: messages.append(n.message))

        await singleton.acquire()

        assert "non-expired" in messages[0]
        assert "'foo'" in messages[0]

    @pytest.mark.asyncio
    async def test_invokes_callback_with_false(self):
        persister = ScriptedPersister(persist=[PersistResult(created=False, conflict_created=now())])
        singleton = Singleton("foo", persister)
        received = []

        await singleton.acquire(lambda err, success: received.append((err, success)))
        await asyncio.sleep(0)

        assert received == [(None, False)]


class TestAcquireWhenLockVanished:

    @pytest.mark.asyncio
    async def test_conflict_without_retry(self):
        persister = ScriptedPersister(persist=[PersistResult(created=False, conflict_created=None)])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        events = record_events(singleton)

        assert await singleton.acquire() is False
        assert events == ["locking", "conflict"]
        assert persister.calls == [("persist_lock", "foo")]


class TestAcquireWhenPersisterFails:

    @pytest.mark.asyncio
    async def test_fires_locking_and_error(self):
        persister = ScriptedPersister(persist=[PersisterError("bad stuff")])
        singleton = Singleton("foo", persister)
        events = record_events(singleton)
        errors = []
        singleton.subscribe("error", lambda n: errors.append(n.error))

        with pytest.raises(PersisterError, match="bad stuff"):
            await singleton.acquire()

        assert events == ["locking", "error"]
        assert str(errors[0]) == "bad stuff"

    @pytest.mark.asyncio
    async def test_foreign_exception_is_wrapped(self):
        cause = RuntimeError("bad stuff")
        singleton = Singleton("foo", ScriptedPersister(persist=[cause]))

        with pytest.raises(PersisterError, match="bad stuff") as excinfo:
            await singleton.acquire()

        assert isinstance(excinfo.value, OSError)
        assert excinfo.value.__cause__ is cause

    @pytest.mark.asyncio
    async def test_invokes_callback_with_error(self):
        singleton = Singleton("foo", ScriptedPersister(persist=[PersisterError("bad stuff")]))
        received = []

        task = singleton.acquire(lambda err, success: received.append((err, success)))
        with pytest.raises(PersisterError):
            await task
        await asyncio.sleep(0)

        assert len(received) == 1
        err, success = received[0]
        assert str(err) == "bad stuff"
        assert success is None


class TestAcquireWhenExpiredLockExists:

    def expired_conflict(self):
        return PersistResult(created=False, conflict_created=now() - timedelta(seconds=3600))

    @pytest.mark.asyncio
    async def test_fires_locking_expired_locked(self):
        persister = ScriptedPersister(persist=[self.expired_conflict(), PersistResult(created=True)])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        events = record_events(singleton)

        assert await singleton.acquire() is True
        assert events == ["locking", "expired", "locked"]
        assert persister.calls == [
            ("persist_lock", "foo"),
            ("delete_lock", "foo"),
            ("persist_lock", "foo"),
        ]

    @pytest.mark.asyncio
    async def test_retry_conflict_is_not_retried_again(self):
        persister = ScriptedPersister(persist=[self.expired_conflict(), self.expired_conflict()])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        events = record_events(singleton)
        messages = []
        singleton.subscribe("conflict", lambda n: messages.append(n.message))

        assert await singleton.acquire() is False
        assert events == ["locking", "expired", "conflict"]
        assert [c[0] for c in persister.calls] == ["persist_lock", "delete_lock", "persist_lock"]
        assert "was deleted" in messages[0]

    @pytest.mark.asyncio
    async def test_retry_vanished_is_conflict(self):
        persister = ScriptedPersister(persist=[self.expired_conflict(), PersistResult(created=False)])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        events = record_events(singleton)

        assert await singleton.acquire() is False
        assert events == ["locking", "expired", "conflict"]

    @pytest.mark.asyncio
    async def test_retry_error(self):
        persister = ScriptedPersister(persist=[self.expired_conflict(), PersisterError("bad stuff")])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        events = record_events(singleton)

        with pytest.raises(PersisterError, match="bad stuff"):
            await singleton.acquire()
        assert events == ["locking", "expired", "error"]

    @pytest.mark.asyncio
    async def test_delete_error(self):
        persister = ScriptedPersister(
            persist=[self.expired_conflict()],
            delete=[PersisterError("cannot delete")]
        )
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 300})
        events = record_events(singleton)

        with pytest.raises(PersisterError, match="cannot delete"):
            await singleton.acquire()
        assert events == ["locking", "error"]
        assert [c[0] for c in persister.calls] == ["persist_lock", "delete_lock"]

    @pytest.mark.asyncio
    async def test_zero_expiry_disables_expiry(self):
        persister = ScriptedPersister(persist=[self.expired_conflict()])
        singleton = Singleton("foo", persister, {"lock_expire_seconds": 0})

        assert await singleton.acquire() is False
        assert len(persister.calls) == 1


class TestRelease:

    @pytest.mark.asyncio
    async def test_fires_releasing_and_released(self):
        persister = ScriptedPersister()
        singleton = Singleton("foo", persister)
        events = record_events(singleton)

        assert await singleton.release() is None
        assert events == ["releasing", "released"]
        assert persister.calls == [("delete_lock", "foo")]

    @pytest.mark.asyncio
    async def test_invokes_callback(self):
        singleton = Singleton("foo", ScriptedPersister())
        received = []

        await singleton.release(lambda err, result: received.append((err, result)))
        await asyncio.sleep(0)

        assert received == [(None, None)]

    @pytest.mark.asyncio
    async def test_fires_releasing_and_error(self):
        singleton = Singleton("foo", ScriptedPersister(delete=[PersisterError("bad stuff")]))
        events = record_events(singleton)

        with pytest.raises(PersisterError, match="bad stuff"):
            await singleton.release()
        assert events == ["releasing", "error"]

    @pytest.mark.asyncio
    async def test_manual_release_does_not_exit(self):
        singleton = Singleton("foo", ScriptedPersister())
        await singleton.release()

    @pytest.mark.asyncio
    async def test_signaled_release_exits(self):
        singleton = Singleton("foo", ScriptedPersister())
        singleton.is_signaled_for_shutdown = True
        messages = []
        singleton.subscribe("releasing", lambda n: messages.append(n.message))

        # Awaited in-line: a SystemExit escaping a separate task stops the loop
        with pytest.raises(SystemExit) as excinfo:
            await singleton._release(exit_on_signal=True)

        assert excinfo.value.code == 0
        assert "termination signal" in messages[0]

    @pytest.mark.asyncio
    async def test_signaled_release_failure_does_not_exit(self):
        singleton = Singleton("foo", ScriptedPersister(delete=[PersisterError("bad stuff")]))
        singleton.is_signaled_for_shutdown = True

        with pytest.raises(PersisterError):
            await singleton.release()


class TestCheckExists:

    @pytest.mark.asyncio
    async def test_true_without_notifications(self):
        singleton = Singleton("foo", ScriptedPersister(exists=[True]))
        events = record_events(singleton)

        assert await singleton.check_exists() is True
        assert events == []

    @pytest.mark.asyncio
    async def test_false(self):
        singleton = Singleton("foo", ScriptedPersister(exists=[False]))
        assert await singleton.check_exists() is False

    @pytest.mark.asyncio
    async def test_invokes_callback(self):
        singleton = Singleton("foo", ScriptedPersister(exists=[True]))
        received = []

        await singleton.check_exists(lambda err, exists: received.append((err, exists)))
        await asyncio.sleep(0)

        assert received == [(None, True)]

    @pytest.mark.asyncio
    async def test_error_is_raised_but_not_published(self):
        singleton = Singleton("foo", ScriptedPersister(exists=[PersisterError("bad stuff")]))
        events = record_events(singleton)

        with pytest.raises(PersisterError, match="bad stuff"):
            await singleton.check_exists()
        assert events == []


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        singleton = Singleton("foo", ScriptedPersister())
        seen = []
        unsubscribe = singleton.subscribe("locked", lambda n: seen.append(n))

        await singleton.acquire()
        unsubscribe()
        await singleton.acquire()

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_multicast_in_order(self):
        singleton = Singleton("foo", ScriptedPersister())
        seen = []
        singleton.subscribe(LockEvent.LOCKING, lambda n: seen.append("first"))
        singleton.subscribe(LockEvent.LOCKING, lambda n: seen.append("second"))

        await singleton.acquire()

        assert seen == ["first", "second"]

    @pytest.mark.asyncio
    async def test_async_handler_is_scheduled(self):
        singleton = Singleton("foo", ScriptedPersister())
        delivered = asyncio.Event()

        async def handler(notification):
            delivered.set()

        singleton.subscribe("locked", handler)
        await singleton.acquire()
        await asyncio.wait_for(delivered.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_notification_payload(self):
        singleton = Singleton("foo", ScriptedPersister())
        seen = []
        singleton.subscribe("locked", seen.append)

        await singleton.acquire()

        assert seen[0].event is LockEvent.LOCKED
        assert seen[0].name == "foo"
        assert seen[0].error is None


class TestAgainstMemoryPersister:

    @pytest.mark.asyncio
    async def test_second_instance_conflicts(self):
        persister = MemoryPersister()
        first = Singleton("job", persister)
        second = Singleton("job", persister)

        assert await first.acquire() is True
        assert await second.acquire() is False
        await first.release()
        assert await second.acquire() is True

    @pytest.mark.asyncio
    async def test_concurrent_acquires_have_one_winner(self):
        persister = MemoryPersister()
        singletons = [Singleton("job", persister) for _ in range(10)]

        results = await asyncio.gather(*(s.acquire() for s in singletons))

        assert results.count(True) == 1
