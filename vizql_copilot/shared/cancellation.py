"""
Cooperative cancellation for a single turn.

An AbortSignal is threaded through every phase. External calls go through
run_cancelable(), which races the call against the signal so an in-flight
request never blocks turn termination.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar


T = TypeVar("T")


class TurnCancelled(Exception):
    """Raised when the turn's abort signal fires."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(reason or "cancelled")
        self.reason = reason


class AbortSignal:
    """
    One-shot abort flag that async code can both poll and await.

    The signal never resets; a new one is created per turn.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: Optional[str] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason or "aborted"
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason)


def is_aborted(signal: Optional[AbortSignal]) -> bool:
    return signal is not None and signal.aborted


async def run_cancelable(
    signal: Optional[AbortSignal],
    factory: Callable[[], Awaitable[T]],
) -> T:
    """
    Run `factory()` unless or until `signal` aborts.

    The signal is checked before the call starts, then raced against it.
    When the signal wins, the in-flight task is cancelled and TurnCancelled
    is raised; otherwise the call's result (or exception) is returned as-is.

    Args:
        signal: Abort signal for the turn (None disables cancellation)
        factory: Zero-argument callable returning the awaitable to run

    Returns:
        The awaitable's result

    Raises:
        TurnCancelled: If the signal fired before or during the call
    """
    if signal is None:
        return await factory()

    signal.raise_if_aborted()

    task = asyncio.ensure_future(factory())
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, Exception):
        # Abandoned call; its outcome no longer matters.
        pass
    raise TurnCancelled(signal.reason)
