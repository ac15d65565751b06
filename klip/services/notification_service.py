#!/usr/bin/env python3
"""
Notification Service - Coalesces clip store mutations into change signals
"""
import logging
import queue
import threading
import time
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

Subscriber = Callable[[], None]


class NotificationService:
    """
    Publish/subscribe channel for "history changed" signals.

    The pending signal lives in a queue bounded to a single entry, so any
    number of mutations raised before delivery collapse into one callback
    per subscriber. The signal carries no data: subscribers re-query.
    """

    def __init__(self, tick: float = 0.05):
        """
        Initialize notification service

        Args:
            tick: Seconds to wait after the first mutation before delivering,
                  mutations raised in that window join the same notification
        """
        logger.info("[NotificationService.__init__] Starting initialization...")
        self.tick = tick
        self._pending: queue.Queue = queue.Queue(maxsize=1)
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        logger.info("[NotificationService.__init__] Initialization complete")

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a subscriber

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def notify(self):
        """Signal that the clip set may have changed"""
        try:
            self._pending.put_nowait(True)
        except queue.Full:
            # Already pending, this mutation is covered by that notification
            pass

    def _drain(self) -> bool:
        drained = False
        while True:
            try:
                self._pending.get_nowait()
                drained = True
            except queue.Empty:
                return drained

    def _deliver(self):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in change subscriber {callback!r}: {e}")

    def dispatch_pending(self) -> bool:
        """
        Deliver the pending notification, if any, on the calling thread

        Returns:
            True if subscribers were notified
        """
        if not self._drain():
            return False
        self._deliver()
        return True

    def start(self):
        """Start the dispatcher thread"""
        if self._thread and self._thread.is_alive():
            logger.warning("Notification dispatcher already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="notifier", daemon=True)
        self._thread.start()
        logger.info("Notification dispatcher started")

    def _worker(self):
        while not self._stop.is_set():
            try:
                self._pending.get(timeout=0.5)
            except queue.Empty:
                continue
            if self.tick > 0:
                time.sleep(self.tick)
            # Anything raised during the tick joins this delivery
            self._drain()
            self._deliver()

    def stop(self):
        """Stop the dispatcher thread"""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None
        logger.info("Notification dispatcher stopped")
