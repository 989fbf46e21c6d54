"""
Document store boundary.

Контракт хранилища документов (чтение, подписка на изменения, запись) и
in-memory реализация для локального запуска и тестов.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol

from .models import ChangeEvent, ChangeKind

logger = logging.getLogger(__name__)


Record = dict[str, Any]
Filter = Mapping[str, Any]
ChangeHandler = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]


class StoreReadError(RuntimeError):
    """A read from the store failed (network, permissions, ...)."""


class DocumentStore(Protocol):
    async def fetch_all(self, collection: str, filter: Optional[Filter] = None) -> list[Record]:
        ...

    def subscribe(
        self,
        collection: str,
        on_change: ChangeHandler,
        filter: Optional[Filter] = None,
    ) -> Unsubscribe:
        ...

    async def create(self, collection: str, record: Record) -> str:
        ...

    async def delete(self, collection: str, entity_id: str) -> None:
        ...


def matches_filter(entity_id: str, record: Mapping[str, Any], filter: Optional[Filter]) -> bool:
    """Field-equality match; the ``id`` field matches the document id."""
    if not filter:
        return True
    for field, expected in filter.items():
        actual = entity_id if field == "id" else record.get(field)
        if actual != expected:
            return False
    return True


class MemoryStore:
    """
    In-process document store.

    Subscriptions only see changes made after they were registered; callers
    that need the current state run their own catch-up read first.
    Callbacks run synchronously, in write order.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Record]] = defaultdict(dict)
        self._subscribers: dict[str, list[tuple[Optional[Filter], ChangeHandler]]] = defaultdict(list)
        # Коллекции, чтение которых должно падать (для проверки отказоустойчивости)
        self.failing_collections: set[str] = set()

    # region seeding
    @classmethod
    def from_seed_file(cls, path: Path) -> "MemoryStore":
        """Load ``{collection: [record, ...]}`` JSON without emitting changes."""
        store = cls()
        data = json.loads(path.read_text(encoding="utf-8"))
        for collection, records in data.items():
            store.seed(collection, records)
        logger.info("Seeded store from %s (%s collections)", path, len(data))
        return store

    def seed(self, collection: str, records: list[Record]) -> None:
        for record in records:
            entity_id = str(record.get("id") or uuid.uuid4().hex)
            self._collections[collection][entity_id] = {k: v for k, v in record.items() if k != "id"}

    # endregion

    async def fetch_all(self, collection: str, filter: Optional[Filter] = None) -> list[Record]:
        if collection in self.failing_collections:
            raise StoreReadError(f"Read of {collection!r} failed")
        return [
            {"id": entity_id, **record}
            for entity_id, record in self._collections[collection].items()
            if matches_filter(entity_id, record, filter)
        ]

    def subscribe(
        self,
        collection: str,
        on_change: ChangeHandler,
        filter: Optional[Filter] = None,
    ) -> Unsubscribe:
        entry = (filter, on_change)
        self._subscribers[collection].append(entry)

        def unsubscribe() -> None:
            try:
                self._subscribers[collection].remove(entry)
            except ValueError:
                pass  # already unsubscribed

        return unsubscribe

    def subscriber_count(self, collection: str) -> int:
        return len(self._subscribers[collection])

    async def create(self, collection: str, record: Record) -> str:
        entity_id = str(record.get("id") or uuid.uuid4().hex)
        payload = {k: v for k, v in record.items() if k != "id"}
        self._collections[collection][entity_id] = payload
        self._emit(collection, ChangeKind.ADDED, entity_id, payload)
        return entity_id

    async def update(self, collection: str, entity_id: str, changes: Record) -> None:
        if entity_id not in self._collections[collection]:
            raise KeyError(f"{collection}/{entity_id} does not exist")
        payload = {**self._collections[collection][entity_id], **changes}
        self._collections[collection][entity_id] = payload
        self._emit(collection, ChangeKind.MODIFIED, entity_id, payload)

    async def delete(self, collection: str, entity_id: str) -> None:
        payload = self._collections[collection].pop(entity_id, None)
        if payload is None:
            return
        self._emit(collection, ChangeKind.REMOVED, entity_id, payload)

    def _emit(self, collection: str, kind: ChangeKind, entity_id: str, payload: Record) -> None:
        event = ChangeEvent(
            collection=collection,
            kind=kind,
            entity_id=entity_id,
            payload={"id": entity_id, **payload},
        )
        for filter, handler in list(self._subscribers[collection]):
            if not matches_filter(entity_id, payload, filter):
                continue
            try:
                handler(event)
            except Exception as e:  # noqa: BLE001
                logger.exception("Change handler for %s failed: %s", collection, e)


__all__ = [
    "ChangeHandler",
    "DocumentStore",
    "MemoryStore",
    "Record",
    "StoreReadError",
    "Unsubscribe",
    "matches_filter",
]
