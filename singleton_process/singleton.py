"""
Singleton - named, store-backed mutual exclusion across a fleet of processes.

A Singleton guards one logical resource name. ``acquire()`` asks the persister
to create the lock record; on conflict the existing record's creation time is
compared against ``lock_expire_seconds`` and an expired record is deleted and
the create retried exactly once. Every step is published to subscribers:

    locking -> [expired ->] (locked | conflict | error)
    releasing -> (released | error)

Each operation returns one asyncio.Task. An optional ``callback(err, result)``
is attached to that task; awaiting the task still raises on failure.

Example:
    persister = SQLitePersister("singletons.sqlite")
    singleton = Singleton("nightly-report", persister, {"lock_expire_seconds": 3600})
    singleton.subscribe("conflict", lambda n: print(n.message))

    if await singleton.acquire():
        try:
            await run_report()
        finally:
            await singleton.release()
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .config import SingletonConfig, SingletonOptions
from .errors import ConfigurationError, PersisterError
from .expiry import is_expired
from .monitoring import get_logger
from .persistence import LockPersister, PersistResult, create_persister

logger = get_logger(__name__)


class LockEvent(str, Enum):
    """Notification kinds published by a Singleton."""
    LOCKING = "locking"
    LOCKED = "locked"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    RELEASING = "releasing"
    RELEASED = "released"
    ERROR = "error"


@dataclass
class LockNotification:
    """A single published lifecycle event."""
    event: LockEvent
    name: str
    message: str
    error: Optional[BaseException] = None


Handler = Callable[[LockNotification], Any]
Callback = Callable[[Optional[BaseException], Any], Any]


class Singleton:
    """
    Lock controller for one named resource.

    Args:
        name: Logical resource name; also the lock record's unique key
        persister: Storage backend implementing LockPersister (shared, not owned)
        options: SingletonOptions or a dict with ``lock_expire_seconds``
        shutdown: Optional ShutdownCoordinator that releases this lock on SIGTERM

    The controller keeps no state about ownership and does not serialize its
    own calls; running acquire and release concurrently on one instance is
    racy in the same way the backend is.
    """

    def __init__(
        self,
        name: str,
        persister: LockPersister,
        options: Union[SingletonOptions, Dict[str, Any], None] = None,
        shutdown=None
    ):
        if not name:
            raise ConfigurationError("Missing required parameter 'name'.")
        if persister is None:
            raise ConfigurationError("Missing required parameter 'persister'.")

        self._name = name
        self._persister = persister
        self.options = SingletonOptions.coerce(options)
        self.is_signaled_for_shutdown = False

        self._shutdown = shutdown
        self._subscribers: Dict[LockEvent, List[Handler]] = {event: [] for event in LockEvent}
        self._pending: Set[asyncio.Future] = set()

    @classmethod
    def from_config(cls, config: SingletonConfig, shutdown=None) -> "Singleton":
        """Build a Singleton and its persister from a SingletonConfig."""
        persister_options = dict(config.persister)
        backend = persister_options.pop("backend", "memory")
        persister = create_persister(backend, **persister_options)
        return cls(config.name, persister, config.options, shutdown=shutdown)

    @property
    def name(self) -> str:
        return self._name

    @property
    def persister(self) -> LockPersister:
        return self._persister

    def __repr__(self) -> str:
        return f"Singleton(name={self._name!r}, persister={type(self._persister).__name__})"

    # =========================================================================
    # Notifications
    # =========================================================================

    @staticmethod
    def _event(event: Union[LockEvent, str]) -> LockEvent:
        try:
            return LockEvent(event)
        except ValueError:
            raise ConfigurationError(f"Unknown lock event: {event}")

    def subscribe(self, event: Union[LockEvent, str], handler: Handler) -> Callable[[], None]:
        """
        Register ``handler`` for ``event``.

        Handlers are called synchronously, in subscription order, with a
        LockNotification. A handler returning a coroutine has it scheduled on
        the running loop. Exceptions raised by a handler propagate to the
        operation that published the event.

        Returns:
            A zero-argument function that removes the subscription
        """
        kind = self._event(event)
        self._subscribers[kind].append(handler)
        return lambda: self.unsubscribe(kind, handler)

    def unsubscribe(self, event: Union[LockEvent, str], handler: Handler) -> None:
        handlers = self._subscribers[self._event(event)]
        if handler in handlers:
            handlers.remove(handler)

    def _publish(self, event: LockEvent, message: str, error: Optional[BaseException] = None) -> None:
        logger.debug(f"[{event.value}] {message}", extra={"lock_name": self._name})

        notification = LockNotification(event=event, name=self._name, message=message, error=error)
        for handler in list(self._subscribers[event]):
            result = handler(notification)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    # =========================================================================
    # Result delivery
    # =========================================================================

    @staticmethod
    def _deliver(coro: Awaitable[Any], callback: Optional[Callback]) -> "asyncio.Task":
        task = asyncio.ensure_future(coro)
        if callback is None:
            return task

        def _on_done(done: asyncio.Future) -> None:
            if done.cancelled():
                callback(asyncio.CancelledError(), None)
                return
            error = done.exception()
            if error is not None:
                callback(error, None)
            else:
                callback(None, done.result())

        task.add_done_callback(_on_done)
        return task

    async def _call_persister(self, operation, notify: bool = True):
        """Run a persister operation, normalizing failures to PersisterError."""
        try:
            return await operation(self._name)
        except PersisterError as e:
            self._fail(e, notify)
            raise
        except Exception as e:
            error = PersisterError(str(e))
            self._fail(error, notify)
            raise error from e

    def _fail(self, error: PersisterError, notify: bool) -> None:
        logger.error(f"Persister failure for singleton '{self._name}': {error}", extra={"lock_name": self._name})
        if notify:
            self._publish(LockEvent.ERROR, str(error), error=error)

    # =========================================================================
    # Acquire
    # =========================================================================

    def acquire(self, callback: Optional[Callback] = None) -> "asyncio.Task":
        """
        Try to take the lock once (plus at most one retry after expiry).

        Returns:
            Task resolving to True when this call created the lock, False when
            a live conflicting lock exists. Raises PersisterError on any
            backend failure.
        """
        return self._deliver(self._acquire(), callback)

    async def _persist(self) -> PersistResult:
        return await self._call_persister(self._persister.persist_lock)

    def _locked(self) -> bool:
        if self._shutdown is not None:
            self._shutdown.register(self)
        self._publish(LockEvent.LOCKED, f"Lock successfully obtained for singleton '{self._name}'.")
        return True

    def _vanished(self) -> bool:
        self._publish(
            LockEvent.CONFLICT,
            f"A lock for singleton '{self._name}' existed at the moment this one was being locked "
            f"but is no longer there."
        )
        return False

    async def _acquire(self) -> bool:
        self._publish(LockEvent.LOCKING, f"Attempting lock for singleton '{self._name}'.")

        result = await self._persist()
        if result.created:
            return self._locked()

        conflict_created = result.conflict_created
        if conflict_created is None:
            return self._vanished()

        if not is_expired(conflict_created, self.options.lock_expire_seconds):
            self._publish(
                LockEvent.CONFLICT,
                f"A non-expired lock (created {conflict_created.isoformat()}) for singleton "
                f"'{self._name}' already exists."
            )
            return False

        await self._call_persister(self._persister.delete_lock)
        self._publish(
            LockEvent.EXPIRED,
            f"Automatically deleted expired lock (created {conflict_created.isoformat()}) "
            f"for singleton '{self._name}'."
        )

        # Single retry; expiry is not re-evaluated
        retry = await self._persist()
        if retry.created:
            return self._locked()
        if retry.conflict_created is None:
            return self._vanished()

        self._publish(
            LockEvent.CONFLICT,
            f"An expired lock (created {conflict_created.isoformat()}) for singleton '{self._name}' "
            f"was deleted, but when an attempt to create a new lock was made, another lock "
            f"(created {retry.conflict_created.isoformat()}) existed."
        )
        return False

    # =========================================================================
    # Release
    # =========================================================================

    def release(self, callback: Optional[Callback] = None, exit_on_signal: bool = True) -> "asyncio.Task":
        """
        Delete the lock record for this name, whoever created it.

        When ``is_signaled_for_shutdown`` is set and the delete succeeds the
        process exits (SystemExit(0)) unless ``exit_on_signal`` is False.

        Returns:
            Task resolving to None. Raises PersisterError on backend failure.
        """
        return self._deliver(self._release(exit_on_signal), callback)

    async def _release(self, exit_on_signal: bool) -> None:
        if self.is_signaled_for_shutdown:
            message = (
                f"Attempting automatic lock release of singleton '{self._name}' "
                f"since the process received a termination signal."
            )
        else:
            message = f"Attempting lock release of singleton '{self._name}'."
        self._publish(LockEvent.RELEASING, message)

        await self._call_persister(self._persister.delete_lock)

        if self._shutdown is not None:
            self._shutdown.unregister(self)
        self._publish(LockEvent.RELEASED, f"Lock successfully released for singleton '{self._name}'.")

        if self.is_signaled_for_shutdown and exit_on_signal:
            logger.info(f"Exiting after releasing singleton '{self._name}'")
            raise SystemExit(0)

    # =========================================================================
    # Exists
    # =========================================================================

    def check_exists(self, callback: Optional[Callback] = None) -> "asyncio.Task":
        """
        Report whether a lock record currently exists for this name.

        Read-only and silent: no notifications are published, even on failure.
        """
        return self._deliver(self._call_persister(self._persister.lock_exists, notify=False), callback)


__all__ = [
    "LockEvent",
    "LockNotification",
    "Singleton",
]
