"""
Live notification pipeline.

Оркестратор уведомлений:
- на каждую коллекцию (events, schedules, courses) сначала догоняющее чтение,
  затем подписка на изменения
- классификация изменения: сегодня / завтра / отмена
- дедупликация по составному ключу и постановка в очередь доставки
- сбой одной коллекции не останавливает остальные
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, NamedTuple, Optional

from pydantic import ValidationError

from .config import Settings
from .dedup import DedupStore
from .delivery import NotifyFunc, ThrottledDeliveryQueue
from .models import (
    CampusEvent,
    ChangeEvent,
    ChangeKind,
    ClassSchedule,
    Course,
    NotificationKey,
    PipelineState,
    Role,
    UserProfile,
)
from .scoping import ScheduleScope, scope_for
from .store import DocumentStore, Filter, Record, StoreReadError, Unsubscribe
from .timeinterval import Bucket, normalize_date, temporal_bucket
from .utils import call_with_retry

logger = logging.getLogger(__name__)


EVENTS = "events"
SCHEDULES = "schedules"
COURSES = "courses"

# added/modified и догоняющее чтение дают одно и то же уведомление
UPCOMING = "upcoming"
CANCELLED = "cancelled"


class Notice(NamedTuple):
    key: NotificationKey
    message: str


class WatchState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBED = "subscribed"


@dataclass
class CollectionWatch:
    collection: str
    state: WatchState = WatchState.UNSUBSCRIBED
    unsubscribe: Optional[Unsubscribe] = None


# region classification
def dated_id(entity_id: str, day: str) -> str:
    """Entity id qualified by its date, so a move to another day is a new notification."""
    return f"{entity_id}@{normalize_date(day)}"


def classify_event(record: Mapping[str, Any], kind: Optional[ChangeKind], today: date) -> Optional[Notice]:
    """Campus events notify only when they happen today or tomorrow; ``kind=None`` is a catch-up hit."""
    if kind is ChangeKind.REMOVED:
        return None
    event = CampusEvent.model_validate(record)
    bucket = temporal_bucket(event.start_date, today)
    if bucket is Bucket.NONE:
        return None
    details = f'"{event.title}" at {event.start_time} in {event.location}'
    if kind is None:
        message = f"Event {bucket.value}: {details}"
    else:
        message = f"New event {bucket.value}: {details}"
    key = NotificationKey(
        domain="event",
        entity_id=dated_id(event.id, event.start_date),
        bucket=bucket.value,
        kind=UPCOMING,
    )
    return Notice(key, message)


def classify_schedule(record: Mapping[str, Any], kind: Optional[ChangeKind], today: date) -> Optional[Notice]:
    """Removed classes always notify; others only for today or tomorrow."""
    schedule = ClassSchedule.model_validate(record)
    if kind is ChangeKind.REMOVED:
        return Notice(
            NotificationKey(domain="schedule", entity_id=schedule.id, bucket=CANCELLED, kind=ChangeKind.REMOVED.value),
            f"Class cancelled: {schedule.module_title} on {schedule.date}",
        )
    bucket = temporal_bucket(schedule.date, today)
    if bucket is Bucket.NONE:
        return None
    details = f"{schedule.module_title} at {schedule.start_time} in Room {schedule.classroom_number}"
    if kind is None:
        message = f"Class {bucket.value}: {details}"
    else:
        message = f"Schedule update {bucket.value}: {details}"
    key = NotificationKey(
        domain="schedule",
        entity_id=dated_id(schedule.id, schedule.date),
        bucket=bucket.value,
        kind=UPCOMING,
    )
    return Notice(key, message)


def classify_course(record: Mapping[str, Any], kind: Optional[ChangeKind], today: date) -> Optional[Notice]:
    """Course additions and edits always notify, regardless of dates."""
    if kind not in (ChangeKind.ADDED, ChangeKind.MODIFIED):
        return None
    course = Course.model_validate(record)
    if kind is ChangeKind.ADDED:
        message = f"New course available: {course.title} ({course.code})"
    else:
        message = f"Course updated: {course.title} ({course.code})"
    return Notice(NotificationKey(domain="course", entity_id=course.id, bucket="any", kind=kind.value), message)


Classifier = Callable[[Mapping[str, Any], Optional[ChangeKind], date], Optional[Notice]]

CLASSIFIERS: dict[str, Classifier] = {
    EVENTS: classify_event,
    SCHEDULES: classify_schedule,
    COURSES: classify_course,
}

# Курсы, найденные при догоняющем чтении, считаются новыми
CATCH_UP_KINDS: dict[str, Optional[ChangeKind]] = {
    COURSES: ChangeKind.ADDED,
}

# endregion


@dataclass
class NotificationOrchestrator:
    """
    Owns every piece of per-session notification state.

    Built at session start, torn down with :meth:`close` / :meth:`stop` when
    the user logs out or their role changes.
    """

    store: DocumentStore
    user: UserProfile
    queue: ThrottledDeliveryQueue
    dedup: DedupStore
    today: Callable[[], date] = date.today
    fetch_attempts: int = 3
    fetch_retry_delay: float = 1.0
    sweep_initial_delay: float = 1.0
    sweep_interval: float = 3600.0
    collections: tuple[str, ...] = (EVENTS, SCHEDULES, COURSES)
    _state: PipelineState = field(default_factory=PipelineState)
    _watches: dict[str, CollectionWatch] = field(default_factory=dict)
    _closed: bool = False
    _scope: ScheduleScope = field(init=False)

    def __post_init__(self) -> None:
        self._scope = scope_for(self.user)
        self._watches = {name: CollectionWatch(name) for name in self.collections}

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        sink: NotifyFunc,
        settings: Settings,
        user: Optional[UserProfile] = None,
    ) -> "NotificationOrchestrator":
        cfg = settings.notifications
        if user is None:
            user = UserProfile(
                id=settings.session.user_id,
                name=settings.session.user_name,
                role=Role.from_raw(settings.session.role),
            )
        return cls(
            store=store,
            user=user,
            queue=ThrottledDeliveryQueue(sink=sink, min_interval=cfg.delivery_interval),
            dedup=DedupStore(ttl_seconds=cfg.dedup_ttl_seconds, cache_path=cfg.cache_path),
            fetch_attempts=cfg.fetch_attempts,
            fetch_retry_delay=cfg.fetch_retry_delay,
            sweep_initial_delay=cfg.initial_sweep_delay,
            sweep_interval=cfg.sweep_interval,
        )

    @property
    def state(self) -> PipelineState:
        self._state.deliveries = self.queue.delivered
        return self._state

    @property
    def scope(self) -> ScheduleScope:
        return self._scope

    def watch_state(self, collection: str) -> WatchState:
        return self._watches[collection].state

    async def start(self) -> None:
        """Catch up and subscribe every watched collection; failures stay per collection."""
        if self._closed:
            logger.info("Notification pipeline already closed, build a new one to restart")
            return
        if self._state.is_running:
            logger.info("Notification pipeline already running")
            return
        self._state.is_running = True
        self._state.started_at = datetime.now(timezone.utc)
        self.dedup.start_sweeper(self.sweep_initial_delay, self.sweep_interval)
        logger.info("Starting notifications for %s (role=%s)", self.user.id or "<anonymous>", self.user.role.value)
        await asyncio.gather(*(self._start_watch(watch) for watch in self._watches.values()))

    def close(self) -> None:
        """Synchronously unsubscribe everything and stop future deliveries and sweeps."""
        if self._closed:
            return
        self._closed = True
        for watch in self._watches.values():
            if watch.unsubscribe is not None:
                watch.unsubscribe()
                watch.unsubscribe = None
            watch.state = WatchState.UNSUBSCRIBED
        self.queue.close()
        self.dedup.stop_sweeper()
        self._state.is_running = False
        logger.info("Notification pipeline stopped")

    async def stop(self) -> None:
        self.close()
        await self.queue.wait_closed()

    # region watch protocol
    async def _start_watch(self, watch: CollectionWatch) -> None:
        try:
            await self.catch_up(watch.collection)
        except Exception as e:  # noqa: BLE001
            logger.exception("Catch-up for %s failed: %s", watch.collection, e)
            self._state.last_error = f"{watch.collection}: {e}"
        try:
            self.subscribe(watch.collection)
        except Exception as e:  # noqa: BLE001
            logger.exception("Subscription to %s failed: %s", watch.collection, e)
            self._state.last_error = f"{watch.collection}: {e}"

    async def catch_up(self, collection: str) -> int:
        """
        Surface items that were already relevant before the subscription existed.

        Returns the number of records scanned. Courses found here are
        announced as new, once per course while the dedup entry lives.
        """
        try:
            if collection == SCHEDULES:
                records = await self._scope.load(self._fetch)
            else:
                records = await self._fetch(collection, None)
        except StoreReadError as e:
            logger.warning("No %s data this round: %s", collection, e)
            self._state.last_error = f"{collection}: {e}"
            return 0

        if self._closed:
            return 0
        kind = CATCH_UP_KINDS.get(collection)
        for record in records:
            self._state.catch_up_items += 1
            self._classify_and_emit(collection, record, kind)
        logger.info("Catch-up scanned %s %s", len(records), collection)
        return len(records)

    def subscribe(self, collection: str) -> None:
        watch = self._watches[collection]
        if self._closed or watch.state is WatchState.SUBSCRIBED:
            return
        filter: Optional[Filter] = None
        if collection == SCHEDULES:
            if not self._scope.can_subscribe:
                logger.warning("Schedule feed not available for this user, skipping subscription")
                return
            filter = self._scope.subscription_filter()
        watch.unsubscribe = self.store.subscribe(collection, self.handle_change, filter)
        watch.state = WatchState.SUBSCRIBED
        logger.info("Subscribed to %s changes", collection)

    # endregion

    def handle_change(self, change: ChangeEvent) -> None:
        """Change-feed callback; classification, dedup and enqueue all run synchronously."""
        if self._closed:
            return
        self._state.changes_seen += 1
        record = {"id": change.entity_id, **change.payload}
        if change.collection == SCHEDULES and not self._scope.accepts(record):
            return
        self._classify_and_emit(change.collection, record, change.kind)

    def _classify_and_emit(self, collection: str, record: Record, kind: Optional[ChangeKind]) -> None:
        classifier = CLASSIFIERS.get(collection)
        if classifier is None:
            return
        try:
            notice = classifier(record, kind, self.today())
        except ValidationError as e:
            logger.warning("Skipping malformed %s record %s: %s", collection, record.get("id"), e)
            return
        if notice is not None:
            self._emit(notice)

    def _emit(self, notice: Notice) -> None:
        if self.dedup.check_and_mark(notice.key):
            self._state.notifications_suppressed += 1
            logger.debug("Suppressed duplicate notification %s", notice.key)
            return
        self.queue.enqueue(notice.message)
        self._state.notifications_enqueued += 1
        logger.info("Queued notification %s", notice.key)

    async def _fetch(self, collection: str, filter: Optional[Filter]) -> list[Record]:
        return await call_with_retry(
            self.store.fetch_all,
            collection,
            filter,
            attempts=self.fetch_attempts,
            base_delay=self.fetch_retry_delay,
            exceptions=(StoreReadError,),
        )


__all__ = [
    "CATCH_UP_KINDS",
    "CLASSIFIERS",
    "CollectionWatch",
    "Notice",
    "NotificationOrchestrator",
    "WatchState",
    "classify_course",
    "classify_event",
    "classify_schedule",
    "dated_id",
]
