"""Runs the upload engine on a private event loop for the synchronous web layer."""

import asyncio
import logging
import threading
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

import httpx

from chunk_uploader.config import Settings, get_settings
from chunk_uploader.services.events import EventEmitter
from chunk_uploader.services.upload_manager import UploadManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CALL_TIMEOUT = 300.0


class EngineRunner:
    """Owns a background thread running an asyncio loop with one UploadManager.

    Flask handlers are synchronous; they hand coroutines to the loop with
    `call()` and block on the result.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        manager: UploadManager | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.events = manager.events if manager is not None else EventEmitter()
        self._manager = manager
        self._transport = transport
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    @property
    def manager(self) -> UploadManager:
        if self._manager is None:
            raise RuntimeError("Engine not started")
        return self._manager

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    def start(self) -> "EngineRunner":
        """Start the loop thread and initialize the engine. Idempotent."""
        with self._lock:
            if self.running:
                return self

            self._ready.clear()
            self._thread = threading.Thread(target=self._run_loop, name="upload-engine", daemon=True)
            self._thread.start()
            self._ready.wait()

            if self._manager is None:
                self._manager = self.call(self._build_manager)
            self.call(self._manager.init)
            logger.info("Upload engine started")
        return self

    async def _build_manager(self) -> UploadManager:
        # Built on the loop so its asyncio primitives belong to it
        return UploadManager.from_settings(self.settings, self.events, transport=self._transport)

    def call(
        self,
        func: Callable[..., Coroutine[Any, Any, T]],
        *args: Any,
        timeout: float | None = DEFAULT_CALL_TIMEOUT,
    ) -> T:
        """Run `func(*args)` on the engine loop and wait for its result."""
        if self._loop is None or not self.running:
            raise RuntimeError("Engine not started")
        future = asyncio.run_coroutine_threadsafe(func(*args), self._loop)
        return future.result(timeout=timeout)

    def submit(self, func: Callable[..., Coroutine[Any, Any, Any]], *args: Any) -> None:
        """Schedule `func(*args)` on the engine loop without waiting."""
        if self._loop is None or not self.running:
            raise RuntimeError("Engine not started")
        future = asyncio.run_coroutine_threadsafe(func(*args), self._loop)
        future.add_done_callback(_log_failure)

    def stop(self) -> None:
        """Shut the engine down and join the loop thread."""
        with self._lock:
            if not self.running or self._loop is None:
                return
            if self._manager is not None:
                try:
                    self.call(self._manager.shutdown, timeout=30)
                except Exception:
                    logger.warning("Engine shutdown failed", exc_info=True)
            self._loop.call_soon_threadsafe(self._loop.stop)
            if self._thread is not None:
                self._thread.join(timeout=10)
            self._thread = None
            self._loop = None
            logger.info("Upload engine stopped")


def _log_failure(future: Any) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("Background engine call failed", exc_info=error)
