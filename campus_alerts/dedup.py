"""
Notification de-duplication store.

Хранилище уже показанных уведомлений:
- один ключ = одна запись с временем первого появления
- записи старше TTL (24 часа) удаляются периодической очисткой
- необязательный JSON-кэш, чтобы пережить перезапуск клиента;
  пачка отметок в одном проходе цикла событий записывается одним разом
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Union

from .models import DedupEntry, NotificationKey

logger = logging.getLogger(__name__)


DEFAULT_TTL_SECONDS = 24 * 60 * 60


@dataclass
class DedupStore:
    """Time-indexed set of notification keys with TTL eviction."""

    ttl_seconds: float = DEFAULT_TTL_SECONDS
    cache_path: Optional[Path] = None
    clock: Callable[[], float] = time.time
    _entries: dict[str, DedupEntry] = field(default_factory=dict)
    _sweeper: Optional[asyncio.Task[None]] = None
    _dirty: bool = False
    _flush_handle: Optional[asyncio.Handle] = None

    def __post_init__(self) -> None:
        self._load_cache()

    # region cache
    def _load_cache(self) -> None:
        if not self.cache_path or not self.cache_path.exists():
            return
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
            for key, first_seen_at in data.get("entries", {}).items():
                self._entries[key] = DedupEntry(key=key, first_seen_at=float(first_seen_at))
            logger.info("Loaded %s notification keys from cache", len(self._entries))
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to load notification cache: %s", e)

    def _save_cache(self) -> None:
        if not self.cache_path:
            return
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            payload = {"entries": {key: entry.first_seen_at for key, entry in self._entries.items()}}
            self.cache_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to save notification cache: %s", e)

    def _schedule_save(self) -> None:
        if not self.cache_path:
            return
        self._dirty = True
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._flush_handle = loop.call_soon(self.flush)

    def flush(self) -> None:
        """Write pending marks to the cache file, if any."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if not self._dirty:
            return
        self._dirty = False
        self._save_cache()

    # endregion

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return str(key) in self._entries

    def check_and_mark(self, key: Union[NotificationKey, str]) -> bool:
        """
        Return True if ``key`` was already notified within the TTL.

        Otherwise record it as notified now and return False. There is no
        await between the read and the write, so on a single event loop the
        pair is atomic.
        """
        composite = str(key)
        now = self.clock()
        entry = self._entries.get(composite)
        if entry is not None and now - entry.first_seen_at < self.ttl_seconds:
            return True
        # Просроченная, но ещё не вычищенная запись считается отсутствующей
        self._entries[composite] = DedupEntry(key=composite, first_seen_at=now)
        self._schedule_save()
        return False

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries older than the TTL; returns how many were removed."""
        now = self.clock() if now is None else now
        stale = [key for key, entry in self._entries.items() if now - entry.first_seen_at >= self.ttl_seconds]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info("Swept %s expired notification keys", len(stale))
            self._dirty = True
            self.flush()
        return len(stale)

    # region sweeper
    def start_sweeper(self, initial_delay: float = 1.0, interval: float = 3600.0) -> None:
        if self._sweeper and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(
            self._sweep_loop(initial_delay, interval),
            name="dedup-sweeper",
        )

    def stop_sweeper(self) -> None:
        if self._sweeper:
            self._sweeper.cancel()
            self._sweeper = None
        self.flush()

    async def _sweep_loop(self, initial_delay: float, interval: float) -> None:
        # Первая очистка вскоре после старта убирает хвосты прошлой сессии
        await asyncio.sleep(initial_delay)
        while True:
            try:
                self.sweep()
            except Exception as e:  # noqa: BLE001
                logger.exception("Notification cache sweep failed: %s", e)
            await asyncio.sleep(interval)

    # endregion


__all__ = ["DedupStore", "DEFAULT_TTL_SECONDS"]
