"""
Role-based scoping of the schedule feed.

Какие расписания интересны пользователю:
- студент: записи на курсы -> курсы -> модули -> расписания по названию модуля
- преподаватель: расписания, где он указан лектором
- остальные роли: все расписания
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Mapping, Optional

from .models import Course, Role, UserProfile
from .store import Filter, Record

logger = logging.getLogger(__name__)


SCHEDULES = "schedules"

FetchFunc = Callable[[str, Optional[Filter]], Awaitable[list[Record]]]


class ScheduleScope(ABC):
    """Strategy deciding which schedule documents concern the session user."""

    def __init__(self, user: UserProfile) -> None:
        self.user = user

    @property
    def can_subscribe(self) -> bool:
        return True

    def subscription_filter(self) -> Optional[Filter]:
        return None

    @abstractmethod
    async def load(self, fetch: FetchFunc) -> list[Record]:
        """Resolve the scope and return the schedules currently in it."""

    @abstractmethod
    def accepts(self, record: Mapping[str, Any]) -> bool:
        ...


class GlobalScope(ScheduleScope):
    async def load(self, fetch: FetchFunc) -> list[Record]:
        return await fetch(SCHEDULES, None)

    def accepts(self, record: Mapping[str, Any]) -> bool:
        return True


class StaffScope(ScheduleScope):
    """Schedules whose ``lecturerName`` is the session user's name."""

    @property
    def can_subscribe(self) -> bool:
        return bool(self.user.name)

    def subscription_filter(self) -> Optional[Filter]:
        return {"lecturerName": self.user.name}

    async def load(self, fetch: FetchFunc) -> list[Record]:
        if not self.user.name:
            logger.warning("Lecturer name is empty, schedule notifications disabled")
            return []
        return await fetch(SCHEDULES, self.subscription_filter())

    def accepts(self, record: Mapping[str, Any]) -> bool:
        return bool(self.user.name) and record.get("lecturerName") == self.user.name


class LearnerScope(ScheduleScope):
    """Schedules of the modules in the courses the student is enrolled in."""

    def __init__(self, user: UserProfile) -> None:
        super().__init__(user)
        self.module_titles: set[str] = set()

    @property
    def can_subscribe(self) -> bool:
        return bool(self.user.id)

    async def load(self, fetch: FetchFunc) -> list[Record]:
        self.module_titles = set()
        if not self.user.id:
            logger.warning("Student id is empty, cannot resolve enrollments")
            return []

        enrollments = await fetch("enrollments", {"studentId": self.user.id})
        course_ids = [str(e["courseId"]) for e in enrollments if e.get("courseId")]
        if not course_ids:
            logger.info("No enrollments found for student %s", self.user.id)
            return []

        # Порядок ответов не важен, поэтому читаем параллельно
        course_batches = await asyncio.gather(*(fetch("courses", {"id": cid}) for cid in course_ids))
        module_ids: list[str] = []
        for batch in course_batches:
            for record in batch:
                module_ids.extend(Course.model_validate(record).modules)
        if not module_ids:
            logger.info("No modules found for enrolled courses of %s", self.user.id)
            return []

        module_batches = await asyncio.gather(
            *(fetch("modules", {"id": mid}) for mid in dict.fromkeys(module_ids))
        )
        titles = {str(m["title"]) for batch in module_batches for m in batch if m.get("title")}
        if not titles:
            logger.info("No module titles found for enrolled modules of %s", self.user.id)
            return []
        self.module_titles = titles

        schedule_batches = await asyncio.gather(
            *(fetch(SCHEDULES, {"moduleTitle": title}) for title in sorted(titles))
        )
        unique: dict[str, Record] = {}
        for batch in schedule_batches:
            for record in batch:
                unique.setdefault(str(record.get("id")), record)
        return list(unique.values())

    def accepts(self, record: Mapping[str, Any]) -> bool:
        return record.get("moduleTitle") in self.module_titles


_SCOPES: dict[Role, type[ScheduleScope]] = {
    Role.LEARNER: LearnerScope,
    Role.STAFF: StaffScope,
    Role.ADMIN: GlobalScope,
}


def scope_for(user: UserProfile) -> ScheduleScope:
    return _SCOPES[user.role](user)


__all__ = [
    "FetchFunc",
    "GlobalScope",
    "LearnerScope",
    "ScheduleScope",
    "StaffScope",
    "scope_for",
]
