from typing import List, Set
import asyncio
import logging
from core.events import Notification, NotificationKind

_LEVELS = {
    NotificationKind.TRADE_FAILED: logging.ERROR,
    NotificationKind.DECODE_MISS: logging.WARNING,
    NotificationKind.TRADE_BLOCKED: logging.WARNING,
    NotificationKind.SCANNER_HALTED: logging.CRITICAL,
    NotificationKind.PATTERN_UNMATCHED: logging.DEBUG,
}

class LoggingNotifier:
    """Default sink: every notification becomes a log line"""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)

    async def send(self, notification: Notification):
        level = _LEVELS.get(notification.kind, logging.INFO)
        self.logger.log(level, str(notification))

class NotificationDispatcher:
    """
    Fire-and-forget delivery to every sink. A slow or failing sink is logged
    and otherwise ignored; it never blocks the caller.
    """

    def __init__(self, sinks: List = None, timeout_seconds: float = 5.0, logger=None):
        self.sinks = list(sinks or [])
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._pending: Set[asyncio.Task] = set()
        self.failures = 0

    def add_sink(self, sink):
        self.sinks.append(sink)

    def notify(self, notification: Notification):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.warning(f"No event loop, dropping notification: {notification}")
            return
        for sink in self.sinks:
            task = loop.create_task(self._deliver(sink, notification))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _deliver(self, sink, notification: Notification):
        try:
            await asyncio.wait_for(sink.send(notification), timeout=self.timeout_seconds)
        except Exception as e:
            self.failures += 1
            self.logger.warning(f"Notification sink {type(sink).__name__} failed for {notification.kind.value}: {e!r}")

    async def drain(self):
        """Wait for in-flight deliveries, used on shutdown"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
