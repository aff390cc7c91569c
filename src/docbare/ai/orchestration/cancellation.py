"""Cancellation tokens that unify explicit cancel requests and deadlines.

Every blocking step in the pipeline (upstream read, tagged-stream read)
is raced against one :class:`CancellationToken` so a cancel issued while a
read is already pending takes effect immediately instead of after the
next chunk arrives.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from ..errors import CANCELLED_REASON, TIMEOUT_REASON, OperationCancelled

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

CancelCallback = Callable[[str], None]
ReleaseFn = Callable[[], None]


class CancellationToken:
    """One-shot cancellation signal carrying the reason it fired."""

    def __init__(self, *, name: str | None = None) -> None:
        self.name = name
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[CancelCallback] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = CANCELLED_REASON) -> bool:
        """Cancel the token; returns ``False`` when it was already cancelled."""

        if self._reason is not None:
            return False
        self._reason = reason or CANCELLED_REASON
        self._event.set()
        LOGGER.debug("Cancellation token %s fired (reason=%s)", self.name or id(self), self._reason)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback(self._reason)
            except Exception:  # pragma: no cover - callbacks are internal
                LOGGER.exception("Cancellation callback failed")
        return True

    def add_callback(self, callback: CancelCallback) -> ReleaseFn:
        """Run ``callback(reason)`` on cancellation; returns an unregister function."""

        if self._reason is not None:
            callback(self._reason)
            return _noop
        self._callbacks.append(callback)

        def _remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise OperationCancelled(reason=self._reason)

    async def wait(self) -> str:
        """Block until the token is cancelled and return the reason."""

        await self._event.wait()
        return self._reason or CANCELLED_REASON

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the pending awaitable is cancelled and drained
        before :class:`OperationCancelled` is raised, so no result produced
        after cancellation ever reaches the caller.
        """

        if self._reason is not None:
            _discard(awaitable)
            raise OperationCancelled(reason=self._reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()
        if self._reason is not None:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise OperationCancelled(reason=self._reason)
        return task.result()

    def __repr__(self) -> str:
        state = f"cancelled={self._reason!r}" if self._reason else "active"
        return f"CancellationToken(name={self.name!r}, {state})"


def new_token(
    parent: CancellationToken | None = None,
    timeout: float | None = None,
    *,
    name: str | None = None,
) -> tuple[CancellationToken, ReleaseFn]:
    """Create a token linked to ``parent`` with an optional deadline.

    Returns the token and a release function that disarms the deadline
    timer and unlinks the parent. The release function must be called on
    every exit path; calling it more than once is harmless.
    """

    token = CancellationToken(name=name)
    if parent is not None and parent.cancelled:
        token.cancel(parent.reason or CANCELLED_REASON)
        return token, _noop

    loop = asyncio.get_running_loop()
    timer: asyncio.TimerHandle | None = None
    if timeout is not None and timeout > 0:
        timer = loop.call_later(timeout, token.cancel, TIMEOUT_REASON)

    unlink_parent: ReleaseFn = _noop
    if parent is not None:
        unlink_parent = parent.add_callback(token.cancel)

    released = False

    def _disarm(_reason: str | None = None) -> None:
        if timer is not None:
            timer.cancel()

    # The deadline is pointless once the token fired for another reason.
    unlink_self = token.add_callback(_disarm)

    def release() -> None:
        nonlocal released
        if released:
            return
        released = True
        _disarm()
        unlink_parent()
        unlink_self()

    return token, release


def _noop(*_args: object) -> None:
    return None


def _discard(awaitable: Awaitable[object]) -> None:
    # Close never-started coroutines to avoid "was never awaited" warnings.
    close = getattr(awaitable, "close", None)
    if callable(close) and asyncio.iscoroutine(awaitable):
        close()


__all__ = ["CancellationToken", "ReleaseFn", "new_token"]
