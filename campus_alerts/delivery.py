"""
Throttled FIFO delivery of notification messages.

Очередь уведомлений: сообщения уходят в приёмник строго по одному,
с паузой не меньше min_interval между доставками. Ничего не теряется,
всплеск из N сообщений растягивается минимум на (N-1) интервалов.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .models import QueueItem

logger = logging.getLogger(__name__)


NotifyFunc = Callable[[str], Awaitable[None]]


@dataclass
class ThrottledDeliveryQueue:
    """Unbounded FIFO drained by a background task with minimum spacing."""

    sink: NotifyFunc
    min_interval: float = 1.0
    delivered: int = 0
    _items: deque[QueueItem] = field(default_factory=deque)
    _task: Optional[asyncio.Task[None]] = None
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    _last_delivery_at: Optional[float] = None

    @property
    def pending(self) -> int:
        return len(self._items)

    @property
    def is_closed(self) -> bool:
        return self._stop_event.is_set()

    @property
    def is_draining(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, message: str) -> None:
        """Append to the tail and make sure the drain task is running. Never blocks."""
        if self.is_closed:
            logger.debug("Queue closed, dropping message: %s", message)
            return
        loop = asyncio.get_running_loop()
        self._items.append(QueueItem(message=message, enqueued_at=loop.time()))
        if not self.is_draining:
            self._task = loop.create_task(self._drain(), name="notification-drain")

    def close(self) -> None:
        """
        Stop scheduling further deliveries.

        A message already handed to the sink finishes; queued ones are dropped.
        """
        if self.is_closed:
            return
        self._stop_event.set()
        if self._items:
            logger.info("Dropping %s undelivered notifications on close", len(self._items))
            self._items.clear()

    async def wait_closed(self, timeout: float = 30) -> None:
        if not self._task:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Notification drain did not stop within timeout")

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._items and not self._stop_event.is_set():
            while self._last_delivery_at is not None and not self._stop_event.is_set():
                remaining = self._last_delivery_at + self.min_interval - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
            if self._stop_event.is_set() or not self._items:
                break

            item = self._items.popleft()
            try:
                await self.sink(item.message)
            except Exception as e:  # noqa: BLE001
                logger.exception("Notification sink failed: %s", e)
            self._last_delivery_at = loop.time()
            self.delivered += 1
            logger.debug(
                "Delivered notification after %.2fs in queue (%s pending)",
                self._last_delivery_at - item.enqueued_at,
                len(self._items),
            )


__all__ = ["NotifyFunc", "ThrottledDeliveryQueue"]
