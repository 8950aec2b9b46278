"""Cooperative cancellation.

A CancellationToken is handed to every suspension point of an execution. The
deadline timer and an explicit cancel call both fire it; only the first trigger
counts.
"""

import asyncio
from typing import Any, Awaitable, TypeVar

from conductor_core.exceptions import OperationCancelledError

T = TypeVar("T")

REASON_TIMEOUT = "timeout"
REASON_CANCELLED = "cancelled"


class CancellationToken:
    """One-shot cancellation signal."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = REASON_CANCELLED) -> bool:
        """Fire the token.

        Returns:
            True if this call fired it, False if it had already fired
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> str | None:
        await self._event.wait()
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError(
                f"Operation {self._reason}", reason=self._reason or REASON_CANCELLED
            )


async def run_cancellable(
    awaitable: Awaitable[T], token: CancellationToken | None
) -> T:
    """Await `awaitable`, aborting it as soon as `token` fires.

    Raises:
        OperationCancelledError: token fired first (reason carried on the error)
    """
    if token is None:
        return await awaitable

    if token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    work: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise OperationCancelledError(
        f"Operation {token.reason}", reason=token.reason or REASON_CANCELLED
    )
