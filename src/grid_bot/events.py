# src/grid_bot/events.py

import logging
import queue
import threading
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Optional, Tuple

from grid_bot.logging_config import structured_log_extra

logger = logging.getLogger(__name__)

TICKER = "ticker"
PRICE_STATUS = "price_status"
USER_STATUS = "user_status"
BALANCES = "balances"
ORDER_UPDATE = "order_update"
WALLET = "wallet"

Handler = Callable[[Any], None]

_STOP = object()


class EventHub:
    """
    Topic-based fan-out. ``publish`` only enqueues; a daemon dispatcher thread
    delivers to subscribers so producers (stream loops, the engine) never wait
    on observers. A failing handler is logged and the remaining handlers still
    receive the event.
    """

    def __init__(self, *, inline: bool = False, max_queue: int = 10000):
        self._inline = inline
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._lock = threading.Lock()
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def inline(cls) -> "EventHub":
        """Hub that delivers synchronously on the publishing thread."""
        return cls(inline=True)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[topic]:
                    self._handlers[topic].remove(handler)

        return _unsubscribe

    def publish(self, topic: str, payload: Any) -> None:
        if self._inline:
            self._deliver(topic, payload)
            return
        self._ensure_started()
        try:
            self._queue.put_nowait((topic, payload))
        except queue.Full:
            logger.warning(
                "Event queue full; dropping event",
                extra=structured_log_extra(event="event_dropped", topic=topic),
            )

    def start(self) -> None:
        if not self._inline:
            self._ensure_started()

    def stop(self, timeout: float = 2.0) -> None:
        thread = self._thread
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout=timeout)
        self._thread = None

    def _ensure_started(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._dispatch_loop, name="grid-bot-events", daemon=True
            )
            self._thread.start()

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            topic, payload = item  # type: Tuple[str, Any]
            self._deliver(topic, payload)

    def _deliver(self, topic: str, payload: Any) -> None:
        with self._lock:
            handlers = list(self._handlers.get(topic, ()))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "Event handler failed",
                    extra=structured_log_extra(event="event_handler_error", topic=topic),
                )
