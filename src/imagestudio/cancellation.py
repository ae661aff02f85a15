"""Cooperative cancellation shared by the executor, retry loop and batch fan-out."""

import asyncio
import itertools
from typing import Awaitable, Optional, TypeVar

from imagestudio.errors import OperationCancelled

T = TypeVar("T")

_token_ids = itertools.count(1)


class CancellationToken:
    """An explicit, one-shot cancellation signal passed through every async boundary."""

    def __init__(self) -> None:
        self.id = next(_token_ids)
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(f"token {self.id} cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"<CancellationToken {self.id} {state}>"


async def race(
    awaitable: Awaitable[T],
    token: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> T:
    """Await ``awaitable`` unless the token fires or the timeout elapses first.

    Raises OperationCancelled or asyncio.TimeoutError; the losing work is
    cancelled and its outcome discarded.
    """
    if token is not None:
        token.raise_if_cancelled()
    work = asyncio.ensure_future(awaitable)
    waiters = {work}
    cancel_waiter = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()

    if work in done:
        return work.result()
    work.cancel()
    # Swallow the abandoned call's eventual outcome so it is never reported as unretrieved.
    work.add_done_callback(_discard_outcome)
    if cancel_waiter is not None and cancel_waiter in done:
        raise OperationCancelled(f"token {token.id} cancelled")
    raise asyncio.TimeoutError(f"no response within {timeout}s")


def _discard_outcome(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


async def cancellable_sleep(
    seconds: float, token: Optional[CancellationToken] = None
) -> None:
    """asyncio.sleep that returns early with OperationCancelled when the token fires."""
    if seconds <= 0:
        if token is not None:
            token.raise_if_cancelled()
        return
    await race(asyncio.sleep(seconds), token)
