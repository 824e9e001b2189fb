from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised by ``CancellationToken.guard`` when the token fires first."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "operation cancelled")
        self.reason = reason


class CancellationToken:
    """
    Cooperative cancellation signal shared between a caller and the work it
    started.

    - ``cancel()`` is idempotent and thread-safe;
    - ``child()`` derives a token that fires when this one fires (but not the
      other way round), so a request-scoped token can cancel the generation it
      spawned while an abort only affects the generation;
    - ``guard(awaitable)`` runs the awaitable and aborts it as soon as the
      token fires.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the token. Returns False when it had already fired."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
            waiters, self._waiters = self._waiters, []

        for loop, event in waiters:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                event.set()
            elif not loop.is_closed():
                loop.call_soon_threadsafe(event.set)
        for callback in callbacks:
            callback()
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancel; immediately if the token already fired."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def child(self) -> CancellationToken:
        token = CancellationToken()
        self.add_callback(lambda: token.cancel(self._reason))
        return token

    async def wait(self) -> None:
        loop = asyncio.get_running_loop()
        event = asyncio.Event()
        with self._lock:
            if self._cancelled:
                return
            self._waiters.append((loop, event))
        try:
            await event.wait()
        finally:
            with self._lock:
                with suppress(ValueError):
                    self._waiters.remove((loop, event))

    async def guard(self, awaitable: Awaitable[T], *, grace: float | None = None) -> T:
        """
        Await ``awaitable`` unless the token fires first, in which case the
        underlying task is cancelled (waiting at most ``grace`` seconds for it
        to unwind) and ``OperationCancelled`` is raised.
        """
        task = asyncio.ensure_future(awaitable)
        if self._cancelled:
            task.cancel()
            raise OperationCancelled(self._reason)

        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task.done():
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.wait({task}, timeout=grace)
        if task.done() and not task.cancelled():
            # Drain the exception so it is not reported as never retrieved.
            task.exception()
        raise OperationCancelled(self._reason)


__all__ = ["CancellationToken", "OperationCancelled"]
