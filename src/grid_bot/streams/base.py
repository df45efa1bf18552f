# src/grid_bot/streams/base.py

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Optional

from websockets.asyncio.client import connect

logger = logging.getLogger(__name__)

Connect = Callable[[str], Awaitable[Any]]


async def default_connect(url: str) -> Any:
    """Opens a websocket; ``recv`` on the result yields complete messages."""
    return await connect(url, open_timeout=15, ping_interval=20, max_size=2**20)


class ThreadedStream:
    """
    Runs an asyncio coroutine on a private event loop inside a daemon thread.
    Subclasses implement :meth:`_connect_and_listen` and call
    :meth:`_close_websocket` when a session ends.
    """

    thread_name = "grid-bot-stream"

    def __init__(self, connect_factory: Optional[Connect] = None):
        self._connect = connect_factory or default_connect
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._main_task: Optional[asyncio.Task] = None
        self._websocket: Any = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("%s is already running.", type(self).__name__)
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, name=self.thread_name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._running = False
        loop = self._loop
        if loop and loop.is_running():
            try:
                loop.call_soon_threadsafe(self._request_shutdown)
            except RuntimeError:
                logger.debug("Stream loop closed before shutdown could be scheduled.")
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None

    async def _connect_and_listen(self) -> None:
        raise NotImplementedError

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        asyncio.set_event_loop(loop)
        try:
            self._main_task = loop.create_task(self._connect_and_listen())
            loop.run_until_complete(self._main_task)
        except asyncio.CancelledError:
            logger.debug("%s run loop cancelled during shutdown.", type(self).__name__)
        except Exception:
            logger.exception("%s run loop crashed.", type(self).__name__)
        finally:
            pending = [task for task in asyncio.all_tasks(loop) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()
            self._loop = None

    def _request_shutdown(self) -> None:
        if self._main_task and not self._main_task.done():
            self._main_task.cancel()

    async def _close_websocket(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing websocket: %s", exc)
