"""
Classroom booking: conflict check and the create/cancel workflow.

Бронирование аудиторий: проверка пересечения с существующими бронями
той же аудитории на тот же день и сохранение брони.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Iterable, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from .delivery import NotifyFunc
from .models import BookingRequest, Reservation
from .store import DocumentStore, StoreReadError
from .timeinterval import overlaps

logger = logging.getLogger(__name__)


BOOKINGS = "bookings"
NOTIFICATIONS = "notifications"


def is_available(candidate: BookingRequest, existing: Iterable[Reservation]) -> bool:
    """
    Return False if ``candidate`` overlaps a reservation of the same classroom on the same day.

    The candidate must already satisfy ``start_minute < end_minute``.
    ``existing`` is only read.
    """
    for reservation in existing:
        if reservation.resource_id != candidate.resource_id or reservation.date != candidate.date:
            continue
        if overlaps(
            candidate.start_minute,
            candidate.end_minute,
            reservation.start_minute,
            reservation.end_minute,
        ):
            return False
    return True


class BookingStatus(str, Enum):
    BOOKED = "booked"
    CONFLICT = "conflict"
    INVALID = "invalid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BookingOutcome(BaseModel):
    status: BookingStatus
    message: str
    reservation_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (BookingStatus.BOOKED, BookingStatus.CANCELLED)


def load_reservations(records: Iterable[Mapping[str, Any]]) -> list[Reservation]:
    """Parse store records, skipping ones with malformed dates or times."""
    reservations: list[Reservation] = []
    for record in records:
        try:
            reservations.append(Reservation.from_record(record))
        except ValueError as e:
            logger.warning("Ignoring malformed booking %s: %s", record.get("id"), e)
    return reservations


class BookingService:
    """
    Check-then-commit workflow around :func:`is_available`.

    Bookings of the same classroom on the same day are serialized by an
    ``asyncio.Lock``, so two attempts from this process cannot both pass the
    check. A lock lives only while someone holds or waits for it. Writers in
    other processes are not covered.
    """

    def __init__(self, store: DocumentStore, notify: Optional[NotifyFunc] = None) -> None:
        self.store = store
        self.notify = notify
        self._locks: dict[tuple[str, date], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, date], int] = {}

    @asynccontextmanager
    async def _slot_lock(self, resource_id: str, day: date) -> AsyncIterator[None]:
        key = (resource_id, day)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def book(self, request: Union[BookingRequest, Mapping[str, Any]]) -> BookingOutcome:
        if not isinstance(request, BookingRequest):
            try:
                request = BookingRequest.model_validate(request)
            except ValidationError as e:
                logger.info("Rejected booking form: %s", e)
                return BookingOutcome(status=BookingStatus.INVALID, message="Please fill all required fields with valid values")

        if request.start_minute >= request.end_minute:
            return BookingOutcome(status=BookingStatus.INVALID, message="End time must be after start time")

        async with self._slot_lock(request.resource_id, request.date):
            try:
                records = await self.store.fetch_all(
                    BOOKINGS,
                    {"classroomId": request.resource_id, "date": request.date.isoformat()},
                )
            except StoreReadError as e:
                logger.warning("Could not load bookings for %s: %s", request.resource_id, e)
                return BookingOutcome(status=BookingStatus.FAILED, message="Failed to book classroom. Please try again.")

            if not is_available(request, load_reservations(records)):
                logger.info(
                    "Classroom %s busy on %s %s-%s",
                    request.resource_id,
                    request.date,
                    request.start_time,
                    request.end_time,
                )
                return BookingOutcome(
                    status=BookingStatus.CONFLICT,
                    message="This classroom is not available at the selected time",
                )

            now = datetime.now(timezone.utc).isoformat()
            try:
                reservation_id = await self.store.create(
                    BOOKINGS,
                    {**request.to_record(), "status": "confirmed", "createdAt": now, "updatedAt": now},
                )
            except Exception as e:  # noqa: BLE001
                logger.exception("Error booking classroom: %s", e)
                return BookingOutcome(status=BookingStatus.FAILED, message="Failed to book classroom. Please try again.")

        logger.info("Booked classroom %s on %s as %s", request.resource_id, request.date, reservation_id)
        if request.booked_for and request.booked_for != request.owner_ref:
            await self._notify_lecturer(request)
        return BookingOutcome(
            status=BookingStatus.BOOKED,
            message="Classroom booked successfully!",
            reservation_id=reservation_id,
        )

    async def cancel(self, reservation_id: str) -> BookingOutcome:
        try:
            await self.store.delete(BOOKINGS, reservation_id)
        except Exception as e:  # noqa: BLE001
            logger.exception("Error cancelling booking %s: %s", reservation_id, e)
            return BookingOutcome(status=BookingStatus.FAILED, message="Failed to cancel booking. Please try again.")
        return BookingOutcome(
            status=BookingStatus.CANCELLED,
            message="Booking cancelled and removed successfully!",
            reservation_id=reservation_id,
        )

    async def _notify_lecturer(self, request: BookingRequest) -> None:
        # Ошибка уведомления не отменяет уже созданную бронь
        message = (
            f"A classroom has been booked for you: {request.resource_id} on "
            f"{request.date.isoformat()} from {request.start_time} to {request.end_time} "
            f'for "{request.title}".'
        )
        try:
            await self.store.create(
                NOTIFICATIONS,
                {
                    "userId": request.booked_for,
                    "title": "Classroom Booking",
                    "message": message,
                    "isRead": False,
                    "createdAt": datetime.now(timezone.utc).isoformat(),
                },
            )
        except Exception as e:  # noqa: BLE001
            logger.warning("Error sending notification to lecturer %s: %s", request.booked_for, e)
            return
        if self.notify is not None:
            await self.notify(f"Lecturer {request.booked_for} has been notified of this booking.")


__all__ = [
    "BookingOutcome",
    "BookingService",
    "BookingStatus",
    "is_available",
    "load_reservations",
]
