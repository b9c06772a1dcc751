"""Cancellation tokens for in-flight uploads."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from chunk_uploader.services.errors import UploadCancelled

T = TypeVar("T")


class CancelToken:
    """Per-upload cancellation context, independent of the HTTP library.

    Cancelling is idempotent: only the first reason is kept.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Upload cancelled by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> str | None:
        await self._event.wait()
        return self.reason

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` unless the token fires first.

        Raises:
            UploadCancelled: the token was cancelled before or during the await
        """
        if self.cancelled:
            raise UploadCancelled(self.reason or "")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
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
        # Drain the aborted request; whatever it ended with, the cancellation wins.
        await asyncio.gather(work, return_exceptions=True)
        raise UploadCancelled(self.reason or "")
