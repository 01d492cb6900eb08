"""
Termination-signal handling for held singleton locks.

The application creates one ShutdownCoordinator, installs its signal handlers
once, and passes it to every Singleton. A Singleton registers itself after a
successful acquire (at most once, however often it acquires) and drops out
after a successful release. On SIGTERM/SIGINT the shutdown hooks run first,
then every registered lock is released and, when all releases succeed, the
process exits.

Example:
    shutdown = ShutdownCoordinator()
    shutdown.install_signal_handlers()

    singleton = Singleton("ingest", persister, shutdown=shutdown)
    if await singleton.acquire():
        await shutdown.wait()
"""

import asyncio
import signal
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .monitoring import get_logger

logger = get_logger(__name__)

ShutdownHook = Callable[[int], Any]


@dataclass
class ShutdownCoordinator:
    signals: Sequence[int] = (signal.SIGTERM, signal.SIGINT)
    _stop_event: Optional[asyncio.Event] = field(default=None, repr=False)
    _singletons: Dict[int, object] = field(default_factory=dict, repr=False)
    _hooks: List[ShutdownHook] = field(default_factory=list, repr=False)
    _installed: bool = field(default=False, repr=False)
    _task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def stop_event(self) -> asyncio.Event:
        # Created on first use so it binds to the running loop
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    @property
    def in_progress(self) -> bool:
        """True once a signal has scheduled shutdown."""
        return self._task is not None

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Install handlers on the running loop. Repeated calls are no-ops."""
        if self._installed:
            return
        loop = loop or asyncio.get_running_loop()
        for sig in self.signals:
            loop.add_signal_handler(sig, self._on_signal, sig)
        self._installed = True

    def register(self, singleton) -> None:
        self._singletons[id(singleton)] = singleton

    def unregister(self, singleton) -> None:
        self._singletons.pop(id(singleton), None)

    @property
    def registered(self):
        return list(self._singletons.values())

    def add_hook(self, hook: ShutdownHook) -> None:
        """
        Run ``hook(signum)`` on shutdown, before any lock is released.

        A hook returning an awaitable is awaited, so work that must finish
        while the locks are still held (stopping a child process) can
        complete first.
        """
        self._hooks.append(hook)

    def remove_hook(self, hook: ShutdownHook) -> None:
        if hook in self._hooks:
            self._hooks.remove(hook)

    def _on_signal(self, sig: int) -> None:
        if self._task is not None:
            return
        logger.info(f"Received signal {signal.Signals(sig).name}; releasing {len(self._singletons)} lock(s)")
        self._task = asyncio.ensure_future(self.shutdown(sig))

    async def _run_hooks(self, sig: int) -> None:
        for hook in list(self._hooks):
            result = hook(sig)
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                await result

    async def shutdown(self, sig: int = signal.SIGTERM) -> None:
        """
        Run the shutdown hooks, release every registered lock once, then exit
        if all releases succeeded.

        A failed release has already been published as that Singleton's
        ``error`` notification; it is logged here and keeps the process alive.
        """
        await self._run_hooks(sig)

        singletons = self.registered
        for singleton in singletons:
            singleton.is_signaled_for_shutdown = True

        results = await asyncio.gather(
            *(singleton.release(exit_on_signal=False) for singleton in singletons),
            return_exceptions=True
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            logger.error(f"Lock release during shutdown failed: {failure}")

        self.stop_event.set()

        if not failures:
            raise SystemExit(0)

    async def wait(self) -> None:
        await self.stop_event.wait()


__all__ = [
    "ShutdownCoordinator",
]
