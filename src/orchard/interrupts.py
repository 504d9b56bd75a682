"""Process-wide interrupt source (SIGINT / SIGTERM).

The first Ctrl-C does not kill the orchestrator outright: it flips the issued
flag and wakes every subscribed run, which then goes through the normal stop
and teardown path. ``reset()`` clears the flag (tests, or a REPL that wants
to keep going).
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import weakref
from collections.abc import Iterator

from orchard.logger import logger


class InterruptSource:
    def __init__(self) -> None:
        self._issued = False
        self._events: set[asyncio.Event] = set()
        self._installed: weakref.WeakSet[asyncio.AbstractEventLoop] = weakref.WeakSet()

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Route SIGINT and SIGTERM to ``trigger`` (once per event loop)."""
        loop = loop or asyncio.get_running_loop()
        if loop in self._installed:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.trigger, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                try:
                    signal.signal(
                        sig, lambda s, _frame: loop.call_soon_threadsafe(self.trigger, s)
                    )
                except ValueError:
                    # Not the main thread; interrupts can still be triggered manually
                    logger.debug("Cannot install signal handler", signal=sig)
        self._installed.add(loop)

    def trigger(self, sig: int | None = None) -> None:
        if not self._issued:
            logger.warning("Interrupt received, stopping running containers", signal=sig)
        self._issued = True
        for event in list(self._events):
            event.set()

    def issued(self) -> bool:
        return self._issued

    def reset(self) -> None:
        self._issued = False

    @contextlib.contextmanager
    def subscribe(self) -> Iterator[asyncio.Event]:
        """Yield an event that is set on interrupt (already set if one was issued)."""
        event = asyncio.Event()
        if self._issued:
            event.set()
        self._events.add(event)
        try:
            yield event
        finally:
            self._events.discard(event)


interrupts = InterruptSource()


def ctrlc_issued() -> bool:
    return interrupts.issued()


def reset_ctrlc() -> None:
    interrupts.reset()
